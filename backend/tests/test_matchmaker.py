from decimal import Decimal

import pytest

from battle_quiz import db
from battle_quiz.models import Match, Participant, Transaction
from battle_quiz.services.battle import matchmaker, store
from battle_quiz.services.battle.errors import AlreadyActive, InsufficientFunds, NotFound


def _participant(quiz_id, user_id):
    return (Participant.query
            .filter_by(quiz_id=quiz_id, user_id=user_id)
            .order_by(Participant.id.desc())
            .first())


def test_first_joiner_waits_second_is_paired(make_user, make_quiz, balance_of):
    a = make_user('alice', balance='100.00')
    b = make_user('bob', balance='50.00')
    quiz_id, _ = make_quiz(entry='10.00', question_count=5)

    first = matchmaker.join(quiz_id, a)
    assert first.status == 'waiting'
    assert balance_of(a) == Decimal('90.00')

    second = matchmaker.join(quiz_id, b)
    assert second.status == 'matched'
    assert second.opponent_id == a
    assert balance_of(b) == Decimal('40.00')

    match = db.session.get(Match, second.match_id)
    assert match.status == Match.PLAYING
    assert match.total_rounds == 5
    assert (match.player1_score, match.player2_score) == (0, 0)
    assert match.player1_id == a and match.player2_id == b

    pa, pb = _participant(quiz_id, a), _participant(quiz_id, b)
    assert pa.status == pb.status == Participant.PLAYING
    assert pa.match_id == pb.match_id == match.id

    entries = Transaction.query.filter_by(kind=Transaction.ENTRY).all()
    assert sorted(t.user_id for t in entries) == sorted([a, b])
    assert all(t.amount == Decimal('-10.00') for t in entries)


def test_insufficient_funds_mutates_nothing(make_user, make_quiz, balance_of):
    a = make_user('alice', balance='5.00')
    quiz_id, _ = make_quiz(entry='10.00')
    with pytest.raises(InsufficientFunds):
        matchmaker.join(quiz_id, a)
    assert balance_of(a) == Decimal('5.00')
    assert Participant.query.count() == 0
    assert Transaction.query.count() == 0


def test_inactive_or_missing_quiz_rejected(make_user, make_quiz):
    a = make_user('alice')
    quiz_id, _ = make_quiz(is_active=False)
    with pytest.raises(NotFound):
        matchmaker.join(quiz_id, a)
    with pytest.raises(NotFound):
        matchmaker.join(4242, a)


def test_already_active_rejected(make_user, make_quiz, balance_of):
    a = make_user('alice')
    quiz_id, _ = make_quiz()
    matchmaker.join(quiz_id, a)
    with pytest.raises(AlreadyActive):
        matchmaker.join(quiz_id, a)
    # Only the first entry fee was taken
    assert balance_of(a) == Decimal('90.00')


def test_third_joiner_cannot_take_claimed_players(make_user, make_quiz):
    a, b, c = make_user('alice'), make_user('bob'), make_user('carol')
    quiz_id, _ = make_quiz()
    matchmaker.join(quiz_id, a)
    matchmaker.join(quiz_id, b)
    third = matchmaker.join(quiz_id, c)
    assert third.status == 'waiting'
    assert _participant(quiz_id, c).status == Participant.WAITING
    assert Match.query.count() == 1


def test_direct_challenge_skips_fifo_order(make_user, make_quiz):
    a, c, d = make_user('alice'), make_user('carol'), make_user('dave')
    quiz_id, _ = make_quiz()
    # Two players already sitting in the pool, alice first
    db.session.add(Participant(quiz_id=quiz_id, user_id=a, status=Participant.WAITING))
    db.session.commit()
    db.session.add(Participant(quiz_id=quiz_id, user_id=c, status=Participant.WAITING))
    db.session.commit()

    result = matchmaker.join(quiz_id, d, opponent_id=c)
    assert result.status == 'matched'
    assert result.opponent_id == c
    assert _participant(quiz_id, a).status == Participant.WAITING


def test_unavailable_challenge_falls_back_to_pool(make_user, make_quiz):
    a, b, c = make_user('alice'), make_user('bob'), make_user('carol')
    quiz_id, _ = make_quiz()
    matchmaker.join(quiz_id, a)
    matchmaker.join(quiz_id, b)
    # alice is busy: carol's challenge cannot be honoured and nobody else waits
    assert matchmaker.join(quiz_id, c, opponent_id=a).status == 'waiting'
    d = make_user('dave')
    # dave names a user with no waiting entry and gets carol from the pool
    result = matchmaker.join(quiz_id, d, opponent_id=999)
    assert result.status == 'matched'
    assert result.opponent_id == c


def test_never_paired_with_self(make_user, make_quiz):
    a = make_user('alice')
    quiz_id, _ = make_quiz()
    result = matchmaker.join(quiz_id, a, opponent_id=a)
    assert result.status == 'waiting'
    assert Match.query.count() == 0


def test_no_overdraft_across_quizzes(make_user, make_quiz, balance_of):
    a = make_user('alice', balance='15.00')
    q1, _ = make_quiz(entry='10.00', title='One')
    q2, _ = make_quiz(entry='10.00', title='Two')
    matchmaker.join(q1, a)
    with pytest.raises(InsufficientFunds):
        matchmaker.join(q2, a)
    assert balance_of(a) == Decimal('5.00')
    assert balance_of(a) >= 0


def test_lost_claim_rolls_back_whole_pairing(monkeypatch, make_user, make_quiz):
    a, b = make_user('alice'), make_user('bob')
    quiz_id, _ = make_quiz()
    matchmaker.join(quiz_id, a)

    real_claim = store.claim_pair
    calls = {'n': 0}

    def racing_claim(participant_ids, match_id):
        calls['n'] += 1
        if calls['n'] == 1:
            # Someone else grabs alice between our read and our update
            waiting_alice = _participant(quiz_id, a)
            store.transition_participant(waiting_alice.id, Participant.WAITING, Participant.DONE)
        return real_claim(participant_ids, match_id)

    monkeypatch.setattr(store, 'claim_pair', racing_claim)
    result = matchmaker.join(quiz_id, b)

    # First claim failed and rolled back (alice restored, orphan match discarded);
    # the retry then paired cleanly
    assert calls['n'] == 2
    assert result.status == 'matched'
    assert Match.query.count() == 1
    pa, pb = _participant(quiz_id, a), _participant(quiz_id, b)
    assert pa.status == pb.status == Participant.PLAYING
    assert pa.match_id == pb.match_id == result.match_id


def test_claim_pair_requires_both_waiting(make_user, make_quiz):
    a, b = make_user('alice'), make_user('bob')
    quiz_id, _ = make_quiz()
    pa = Participant(quiz_id=quiz_id, user_id=a, status=Participant.WAITING)
    pb = Participant(quiz_id=quiz_id, user_id=b, status=Participant.PLAYING)
    db.session.add_all([pa, pb])
    db.session.commit()
    match = Match(quiz_id=quiz_id, player1_id=a, player2_id=b, total_rounds=5)
    db.session.add(match)
    db.session.flush()
    assert store.claim_pair([pa.id, pb.id], match.id) is False
    db.session.rollback()
    assert db.session.get(Participant, pa.id).status == Participant.WAITING


def test_cancel_refunds_waiting_entry(make_user, make_quiz, balance_of):
    a = make_user('alice')
    quiz_id, _ = make_quiz()
    matchmaker.join(quiz_id, a)
    assert matchmaker.cancel(quiz_id, a) is True
    assert balance_of(a) == Decimal('100.00')
    assert _participant(quiz_id, a).status == Participant.DONE
    refunds = Transaction.query.filter_by(kind=Transaction.REFUND, user_id=a).all()
    assert len(refunds) == 1
    # Can rejoin after cancelling
    assert matchmaker.join(quiz_id, a).status == 'waiting'


def test_cancel_without_waiting_entry(make_user, make_quiz):
    a = make_user('alice')
    quiz_id, _ = make_quiz()
    with pytest.raises(NotFound):
        matchmaker.cancel(quiz_id, a)
