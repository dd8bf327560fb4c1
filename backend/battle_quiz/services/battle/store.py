"""Match / participant persistence with per-match compare-and-swap.

Mutations to a match go through ``compare_and_set_match`` which only
applies when the stored version still equals the version the caller read.
Different matches never contend with each other; there is no global lock.
"""

from typing import Iterable, Optional

from sqlalchemy import update

from battle_quiz import db
from battle_quiz.models import Match, Participant, Quiz, utcnow
from .errors import NotFound


def get_quiz(quiz_id: int) -> Quiz:
    quiz = db.session.get(Quiz, quiz_id)
    if not quiz:
        raise NotFound('Quiz not found', quiz_id=quiz_id)
    return quiz


def get_match(match_id: int, fresh: bool = False) -> Match:
    match = db.session.get(Match, match_id, populate_existing=fresh)
    if not match:
        raise NotFound('Match not found', match_id=match_id)
    return match


def get_participant(participant_id: int) -> Participant:
    participant = db.session.get(Participant, participant_id)
    if not participant:
        raise NotFound('Participant not found', participant_id=participant_id)
    return participant


def active_participant(quiz_id: int, user_id: int) -> Optional[Participant]:
    return (Participant.query
            .filter(Participant.quiz_id == quiz_id,
                    Participant.user_id == user_id,
                    Participant.status.in_(Participant.ACTIVE_STATUSES))
            .populate_existing()
            .first())


def waiting_candidates(quiz_id: int, exclude_user_id: int, only_user_id: Optional[int] = None):
    """WAITING participants for a quiz in FIFO order, never including the caller."""
    query = Participant.query.filter(
        Participant.quiz_id == quiz_id,
        Participant.status == Participant.WAITING,
        Participant.user_id != exclude_user_id,
    )
    if only_user_id is not None:
        query = query.filter(Participant.user_id == only_user_id)
    return query.order_by(Participant.created_at, Participant.id).populate_existing().all()


def find_active_match(user_id: int) -> Optional[Match]:
    return (Match.query
            .filter(Match.status.in_(Match.ACTIVE_STATUSES),
                    db.or_(Match.player1_id == user_id, Match.player2_id == user_id))
            .order_by(Match.start_time.desc(), Match.id.desc())
            .populate_existing()
            .first())


def compare_and_set_match(match_id: int, expected_version: int, **values) -> bool:
    """Apply ``values`` only if nobody else wrote the match since we read it."""
    values['version'] = expected_version + 1
    result = db.session.execute(
        update(Match)
        .where(Match.id == match_id, Match.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def claim_pair(participant_ids: Iterable[int], match_id: int) -> bool:
    """Move both participants WAITING -> PLAYING onto ``match_id`` in one statement.

    Succeeds only if every row was still WAITING; the caller must roll back
    on False so a half-claimed pair is never committed.
    """
    ids = list(participant_ids)
    result = db.session.execute(
        update(Participant)
        .where(Participant.id.in_(ids), Participant.status == Participant.WAITING)
        .values(status=Participant.PLAYING, match_id=match_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == len(ids)


def transition_participant(participant_id: int, from_status: str, to_status: str) -> bool:
    result = db.session.execute(
        update(Participant)
        .where(Participant.id == participant_id, Participant.status == from_status)
        .values(status=to_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def archive_match_participants(match_id: int) -> int:
    result = db.session.execute(
        update(Participant)
        .where(Participant.match_id == match_id, Participant.status == Participant.PLAYING)
        .values(status=Participant.DONE, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def waiting_entries(user_id: int):
    """Every WAITING participant row a user holds, across quizzes."""
    return (Participant.query
            .filter(Participant.user_id == user_id, Participant.status == Participant.WAITING)
            .order_by(Participant.id)
            .populate_existing()
            .all())
