"""Match lifecycle state machine.

STARTING -> PLAYING -> FINISHED, with ABANDONED as the void-and-refund
exit from either active state. Every mutation is a compare-and-swap on the
match version, so two concurrent submissions for one match cannot both read
the same round and both finalize.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from battle_quiz import db
from battle_quiz.models import AnswerRecord, Match, Transaction, WinnerRecord, utcnow
from . import presence, questions, store, wallet
from .errors import (
    ConcurrencyConflict, DuplicateAnswer, InvalidInput, InvalidTransition, NotFound, NotParticipant,
)
from .notify import push
from .scoring import decide_winner, prize_pool, record_result, result_for, score_answer


TRANSITIONS = {
    Match.STARTING: {Match.PLAYING, Match.ABANDONED},
    Match.PLAYING: {Match.PLAYING, Match.FINISHED, Match.ABANDONED},
    Match.FINISHED: set(),
    Match.ABANDONED: set(),
}


def ensure_transition(current: str, target: str) -> None:
    if target not in TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Match cannot move from {current} to {target}", status=current)


@dataclass
class AnswerOutcome:
    is_correct: bool
    points: int
    question_index: int
    match: dict

    def to_dict(self):
        return {
            'isCorrect': self.is_correct,
            'points': self.points,
            'questionIndex': self.question_index,
            'match': self.match,
        }


def _retry_limit() -> int:
    return max(1, int(current_app.config.get('CONFLICT_RETRY_LIMIT', 5)))


def _payout_fraction():
    return current_app.config.get('PAYOUT_FRACTION', '0.85')


def start_match(match_id: int) -> Match:
    """STARTING -> PLAYING and tell both players who they face."""
    for _ in range(_retry_limit()):
        match = store.get_match(match_id, fresh=True)
        if match.status == Match.PLAYING:
            return match
        ensure_transition(match.status, Match.PLAYING)
        now = utcnow()
        if not store.compare_and_set_match(match.id, match.version, status=Match.PLAYING,
                                           start_time=now, last_activity_at=now):
            db.session.rollback()
            continue
        db.session.commit()
        match = store.get_match(match_id, fresh=True)
        quiz = store.get_quiz(match.quiz_id)
        items = questions.get_questions(match.quiz_id)[:match.total_rounds]
        current_app.logger.info(
            f"[start] match={match.id} quiz={match.quiz_id} p1={match.player1_id} p2={match.player2_id} rounds={match.total_rounds}"
        )
        for uid in match.player_ids:
            push('matched', {
                'matchId': match.id,
                'quizId': match.quiz_id,
                'opponentId': match.opponent_of(uid),
                'totalRounds': match.total_rounds,
                'timePerQuestion': quiz.time_per_question,
                'questions': [q.public_dict(idx) for idx, q in enumerate(items)],
            }, uid)
        # A player who dropped while waiting only gets the grace period from now on
        for uid in match.player_ids:
            if presence.is_disconnected(uid):
                deadline = presence.mark_disconnected(uid, match.id)
                current_app.logger.info(f"[start-offline] match={match.id} user={uid} deadline={deadline}")
                push('opponent_disconnected', {'matchId': match.id, 'reconnectDeadline': deadline},
                     match.opponent_of(uid))
        return match
    raise ConcurrencyConflict('Could not start match', match_id=match_id)


def _answered(match_id: int, user_id: int, question_id: int) -> bool:
    return AnswerRecord.query.filter_by(match_id=match_id, user_id=user_id, question_id=question_id).first() is not None


def _seconds(value) -> Optional[float]:
    """Client-reported answer time; absent is fine, garbage is rejected."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidInput('timeTaken must be a number of seconds', time_taken=str(value))
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise InvalidInput('timeTaken must be a number of seconds', time_taken=str(value))
    if not math.isfinite(seconds) or seconds < 0:
        raise InvalidInput('timeTaken must be a number of seconds', time_taken=str(value))
    return seconds


def submit_answer(match_id: int, user_id: int, question_id: int, selected_option: int,
                  time_taken=None) -> AnswerOutcome:
    time_taken = _seconds(time_taken)
    for attempt in range(_retry_limit()):
        match = store.get_match(match_id, fresh=True)
        if not match.is_player(user_id):
            raise NotParticipant('You are not part of this match', match_id=match_id)
        if match.status not in Match.ACTIVE_STATUSES:
            raise InvalidTransition('Match is not active', status=match.status)
        question = questions.find_question(match.quiz_id, question_id)
        if not question:
            raise NotFound('Question not found', question_id=question_id)
        if _answered(match.id, user_id, question_id):
            raise DuplicateAnswer('Question already answered', question_id=question_id)

        is_correct, points = score_answer(question, selected_option)
        is_player1 = user_id == match.player1_id
        player1_score = match.player1_score + (points if is_player1 else 0)
        player2_score = match.player2_score + (0 if is_player1 else points)
        new_round = match.current_round + 1
        now = utcnow()
        values = {
            'player1_score': player1_score,
            'player2_score': player2_score,
            'current_round': new_round,
            'last_activity_at': now,
        }

        # Either player's submission advances the round
        finishing = new_round >= match.total_rounds
        winner_id = None
        prize = None
        if finishing:
            if match.status == Match.STARTING:
                ensure_transition(match.status, Match.PLAYING)
            ensure_transition(Match.PLAYING, Match.FINISHED)
            winner_id = decide_winner(match.player1_id, player1_score, match.player2_id, player2_score)
            prize = prize_pool(match.entry_amount, _payout_fraction())
            values.update(
                status=Match.FINISHED,
                end_time=now,
                winner_id=winner_id,
                prize_amount=prize,
                payout_status=Match.PAYOUT_PENDING if winner_id else Match.PAYOUT_NONE,
                end_reason='COMPLETED',
            )
        else:
            ensure_transition(match.status, Match.PLAYING)
            values['status'] = Match.PLAYING

        if not store.compare_and_set_match(match.id, match.version, **values):
            db.session.rollback()
            current_app.logger.info(f"[answer-conflict] match={match_id} user={user_id} attempt={attempt + 1}")
            continue

        db.session.add(AnswerRecord(
            match_id=match.id,
            user_id=user_id,
            question_id=question_id,
            selected_option=selected_option,
            is_correct=is_correct,
            points=points,
            time_taken=time_taken,
        ))
        if finishing:
            store.archive_match_participants(match.id)
            record_result(match.id, match.player_ids, winner_id, prize if winner_id else Decimal('0'))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            if _answered(match_id, user_id, question_id):
                raise DuplicateAnswer('Question already answered', question_id=question_id)
            # Some other row collided (e.g. a concurrent stats insert); start over
            current_app.logger.warning(f"[answer-integrity-retry] match={match_id} user={user_id} attempt={attempt + 1}")
            continue
        break
    else:
        raise ConcurrencyConflict('Too many concurrent updates for this match', match_id=match_id)

    match = store.get_match(match_id, fresh=True)
    question_index = questions.index_of(match.quiz_id, question_id)
    current_app.logger.info(
        f"[answer] match={match.id} user={user_id} question={question_id} correct={is_correct} "
        f"points={points} round={match.current_round}/{match.total_rounds} status={match.status}"
    )
    push('opponent_answer', {'matchId': match.id, 'questionIndex': question_index}, match.opponent_of(user_id))

    if finishing:
        current_app.logger.info(
            f"[finish] match={match.id} p1={match.player1_score} p2={match.player2_score} winner={match.winner_id} prize={match.prize_amount}"
        )
        if match.payout_status == Match.PAYOUT_PENDING:
            try:
                settle_payout(match.id)
            except Exception:
                # Match stays PENDING; the sweeper retries the payout
                db.session.rollback()
                current_app.logger.exception(f"[payout-failed] match={match.id}")
            match = store.get_match(match_id, fresh=True)
        announce_result(match)

    return AnswerOutcome(is_correct=is_correct, points=points, question_index=question_index, match=match.to_dict())


def settle_payout(match_id: int) -> bool:
    """Credit the prize exactly once.

    The PENDING -> PAID flip, the wallet credit and the ledger rows commit
    together; a repeated call finds PAID (or loses the swap) and does nothing.
    """
    match = store.get_match(match_id, fresh=True)
    if match.status != Match.FINISHED or match.payout_status != Match.PAYOUT_PENDING or not match.winner_id:
        return False
    if not store.compare_and_set_match(match.id, match.version, payout_status=Match.PAYOUT_PAID):
        db.session.rollback()
        return False
    try:
        wallet.credit(match.winner_id, match.prize_amount)
        wallet.record_transaction(match.winner_id, match.prize_amount, Transaction.WIN,
                                  quiz_id=match.quiz_id, match_id=match.id)
        db.session.add(WinnerRecord(
            quiz_id=match.quiz_id,
            match_id=match.id,
            user_id=match.winner_id,
            rank=1,
            prize_amount=match.prize_amount,
            paid=True,
        ))
        db.session.commit()
    except IntegrityError:
        # A winner record already exists: the prize went out earlier
        db.session.rollback()
        return False
    current_app.logger.info(f"[payout] match={match.id} winner={match.winner_id} amount={match.prize_amount}")
    return True


def abandon(match_id: int, reason: str):
    """Void an active match and refund both entry fees. No-op once terminal."""
    for _ in range(_retry_limit()):
        match = store.get_match(match_id, fresh=True)
        if match.status not in Match.ACTIVE_STATUSES:
            return None
        ensure_transition(match.status, Match.ABANDONED)
        if not store.compare_and_set_match(match.id, match.version, status=Match.ABANDONED,
                                           end_time=utcnow(), end_reason=reason,
                                           winner_id=None, prize_amount=None):
            db.session.rollback()
            continue
        for uid in match.player_ids:
            wallet.credit(uid, match.entry_amount)
            wallet.record_transaction(uid, match.entry_amount, Transaction.REFUND,
                                      quiz_id=match.quiz_id, match_id=match.id)
        store.archive_match_participants(match.id)
        db.session.commit()
        match = store.get_match(match_id, fresh=True)
        current_app.logger.info(f"[abandon] match={match.id} reason={reason} refund={match.entry_amount}")
        for uid in match.player_ids:
            push('match_abandoned', {
                'matchId': match.id,
                'reason': reason,
                'refund': str(match.entry_amount),
            }, uid)
        return match
    raise ConcurrencyConflict('Could not abandon match', match_id=match_id)


def announce_result(match: Match) -> None:
    correct = [q.correct_index for q in questions.get_questions(match.quiz_id)]
    for uid in match.player_ids:
        push('quiz_result', result_for(match, uid, correct), uid)


def match_view(match_id: int, user_id: int) -> dict:
    """Player-perspective snapshot; answer keys only once the match is over."""
    match = store.get_match(match_id, fresh=True)
    if not match.is_player(user_id):
        raise NotParticipant('You are not part of this match', match_id=match_id)
    items = questions.get_questions(match.quiz_id)
    answers = (AnswerRecord.query
               .filter_by(match_id=match.id, user_id=user_id)
               .order_by(AnswerRecord.id)
               .all())
    opponent_id = match.opponent_of(user_id)
    payload = match.to_dict()
    payload.update({
        'your_score': match.score_of(user_id),
        'opponent_score': match.score_of(opponent_id),
        'opponent_id': opponent_id,
        'is_player1': user_id == match.player1_id,
        'questions': [q.public_dict(idx) for idx, q in enumerate(items)],
        'answers': [a.to_dict() for a in answers],
    })
    if match.status == Match.FINISHED:
        payload['correct_answers'] = [q.correct_index for q in items]
    return payload
