from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from battle_quiz import db
from battle_quiz.models import Match, Participant, Transaction, utcnow
from . import questions, store, wallet
from .errors import AlreadyActive, ConcurrencyConflict, InsufficientFunds, NotFound
from .notify import push
from .orchestrator import start_match


@dataclass
class JoinResult:
    status: str  # 'waiting' | 'matched'
    participant_id: int
    quiz_id: int
    match_id: Optional[int] = None
    opponent_id: Optional[int] = None

    def to_dict(self):
        return {
            'status': self.status,
            'participantId': self.participant_id,
            'quizId': self.quiz_id,
            'matchId': self.match_id,
            'opponentId': self.opponent_id,
        }


def join(quiz_id: int, user_id: int, opponent_id: Optional[int] = None) -> JoinResult:
    """Pay the entry fee, enter the waiting pool and pair if anyone is waiting."""
    quiz = store.get_quiz(quiz_id)
    if not quiz.is_active:
        raise NotFound('Quiz not found or inactive', quiz_id=quiz_id)
    items = questions.get_questions(quiz_id)
    if not items:
        raise NotFound('Quiz has no questions', quiz_id=quiz_id)
    if store.active_participant(quiz_id, user_id):
        raise AlreadyActive('You are already in an active match for this quiz', quiz_id=quiz_id)

    entry = quiz.entry_amount
    if not wallet.try_debit(user_id, entry):
        db.session.rollback()
        raise InsufficientFunds(f"Insufficient balance. Required: {entry}", required=str(entry))
    wallet.record_transaction(user_id, -entry, Transaction.ENTRY, quiz_id=quiz_id)
    participant = Participant(quiz_id=quiz_id, user_id=user_id, status=Participant.WAITING)
    db.session.add(participant)
    try:
        db.session.commit()
    except IntegrityError:
        # Lost a race against our own concurrent join; the debit rolls back too
        db.session.rollback()
        raise AlreadyActive('You are already in an active match for this quiz', quiz_id=quiz_id)
    current_app.logger.info(f"[join] quiz={quiz_id} user={user_id} participant={participant.id} entry={entry}")

    return _pair(quiz, participant.id, user_id, opponent_id, total_rounds=min(quiz.question_count, len(items)))


def _pair(quiz, participant_id: int, user_id: int, opponent_id: Optional[int], total_rounds: int) -> JoinResult:
    attempts = max(1, int(current_app.config.get('CONFLICT_RETRY_LIMIT', 5)))
    for _ in range(attempts):
        me = store.get_participant(participant_id)
        db.session.refresh(me)
        if me.status == Participant.PLAYING and me.match_id:
            # A concurrent joiner already paired with us
            match = store.get_match(me.match_id, fresh=True)
            return JoinResult('matched', me.id, quiz.id, match.id, match.opponent_of(user_id))
        if me.status != Participant.WAITING:
            raise NotFound('Waiting entry no longer exists', participant_id=participant_id)

        candidate = None
        if opponent_id is not None:
            direct = store.waiting_candidates(quiz.id, user_id, only_user_id=opponent_id)
            candidate = direct[0] if direct else None
        if candidate is None:
            pool = store.waiting_candidates(quiz.id, user_id)
            candidate = pool[0] if pool else None
        if candidate is None:
            current_app.logger.info(f"[wait] quiz={quiz.id} user={user_id} participant={participant_id}")
            return JoinResult('waiting', participant_id, quiz.id)

        # Whoever waited longest is player1
        match = Match(
            quiz_id=quiz.id,
            player1_id=candidate.user_id,
            player2_id=user_id,
            status=Match.STARTING,
            current_round=0,
            total_rounds=total_rounds,
            player1_score=0,
            player2_score=0,
            entry_amount=quiz.entry_amount,
            payout_status=Match.PAYOUT_NONE,
            version=0,
        )
        db.session.add(match)
        db.session.flush()
        if not store.claim_pair([candidate.id, participant_id], match.id):
            db.session.rollback()
            current_app.logger.info(f"[pair-conflict] quiz={quiz.id} user={user_id} candidate={candidate.user_id}")
            continue
        db.session.commit()
        current_app.logger.info(f"[pair] quiz={quiz.id} match={match.id} p1={candidate.user_id} p2={user_id}")
        start_match(match.id)
        return JoinResult('matched', participant_id, quiz.id, match.id, candidate.user_id)
    raise ConcurrencyConflict('Could not pair, please retry', quiz_id=quiz.id)


def _refund_waiting(participant: Participant, reason: str) -> bool:
    """WAITING -> DONE with the entry fee returned; False if it was claimed meanwhile."""
    if not store.transition_participant(participant.id, Participant.WAITING, Participant.DONE):
        db.session.rollback()
        return False
    quiz = store.get_quiz(participant.quiz_id)
    wallet.credit(participant.user_id, quiz.entry_amount)
    wallet.record_transaction(participant.user_id, quiz.entry_amount, Transaction.REFUND, quiz_id=quiz.id)
    db.session.commit()
    current_app.logger.info(
        f"[refund] quiz={quiz.id} user={participant.user_id} participant={participant.id} reason={reason}"
    )
    if reason == 'timeout':
        push('waiting_expired', {'quizId': quiz.id, 'refund': str(quiz.entry_amount)}, participant.user_id)
    return True


def cancel(quiz_id: int, user_id: int) -> bool:
    participant = store.active_participant(quiz_id, user_id)
    if not participant or participant.status != Participant.WAITING:
        raise NotFound('No waiting entry for this quiz', quiz_id=quiz_id)
    if not _refund_waiting(participant, 'cancelled'):
        raise ConcurrencyConflict('Already paired', quiz_id=quiz_id)
    return True


def expire_waiting(now=None) -> int:
    """Refund and archive WAITING entries older than the waiting timeout."""
    now = now or utcnow()
    timeout = int(current_app.config.get('WAITING_TIMEOUT_SEC', 120))
    cutoff = now - timedelta(seconds=timeout)
    stale = (Participant.query
             .filter(Participant.status == Participant.WAITING, Participant.created_at <= cutoff)
             .order_by(Participant.id)
             .all())
    expired = 0
    for participant in stale:
        if _refund_waiting(participant, 'timeout'):
            expired += 1
    return expired
