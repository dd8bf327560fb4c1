from decimal import Decimal
from typing import Optional

from sqlalchemy import case, insert, update
from sqlalchemy.dialects import postgresql, sqlite

from battle_quiz import db
from battle_quiz.models import BattleStats, Match
from .questions import QuestionItem


def score_answer(question: QuestionItem, selected_option: int):
    """Return (is_correct, points) for one submitted option."""
    is_correct = selected_option == question.correct_index
    return is_correct, (question.marks if is_correct else 0)


def decide_winner(player1_id: int, player1_score: int, player2_id: int, player2_score: int) -> Optional[int]:
    """Strict comparison; equal scores are a tie (None)."""
    if player1_score > player2_score:
        return player1_id
    if player2_score > player1_score:
        return player2_id
    return None


def prize_pool(entry_amount, payout_fraction) -> Decimal:
    total = Decimal(str(entry_amount)) * 2
    return (total * Decimal(str(payout_fraction))).quantize(Decimal('0.01'))


_INSERT_IGNORING_CONFLICT = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


def _ensure_stats_row(user_id: int) -> None:
    """Create the zeroed stats row unless someone already has."""
    row = dict(user_id=user_id, total_matches=0, wins=0, losses=0, ties=0,
               current_streak=0, best_streak=0, total_winnings=Decimal('0.00'))
    dialect = db.session.get_bind().dialect.name
    make_insert = _INSERT_IGNORING_CONFLICT.get(dialect)
    if make_insert:
        db.session.execute(make_insert(BattleStats).values(**row).on_conflict_do_nothing(index_elements=['user_id']))
    elif db.session.get(BattleStats, user_id) is None:
        db.session.execute(insert(BattleStats).values(**row))


def record_result(match_id: int, player_ids, winner_id: Optional[int], prize_amount) -> None:
    """Fold a finished match into both players' battle stats.

    Winner: +1 win, streak +1, winnings += prize. Loser: +1 loss, streak reset.
    Tie: +1 tie for both, streaks reset. Counters are bumped in SQL so
    matches finishing at the same time never overwrite each other.
    """
    for uid in player_ids:
        _ensure_stats_row(uid)
        values = {'total_matches': BattleStats.total_matches + 1}
        if winner_id is None:
            values.update(ties=BattleStats.ties + 1, current_streak=0)
        elif uid == winner_id:
            streak = BattleStats.current_streak + 1
            values.update(
                wins=BattleStats.wins + 1,
                current_streak=streak,
                best_streak=case((streak > BattleStats.best_streak, streak), else_=BattleStats.best_streak),
                total_winnings=BattleStats.total_winnings + Decimal(str(prize_amount or 0)),
            )
        else:
            values.update(losses=BattleStats.losses + 1, current_streak=0)
        db.session.execute(
            update(BattleStats)
            .where(BattleStats.user_id == uid)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


def leaderboard(limit: int = 50):
    rows = (BattleStats.query
            .filter(BattleStats.total_matches > 0)
            .order_by(BattleStats.wins.desc(), BattleStats.total_matches.asc(), BattleStats.user_id.asc())
            .limit(limit)
            .all())
    return [
        {'rank': idx + 1, 'username': row.user.username if row.user else None, **row.to_dict()}
        for idx, row in enumerate(rows)
    ]


def result_for(match: Match, user_id: int, correct_answers) -> dict:
    """``quiz_result`` payload from one player's perspective."""
    opponent_id = match.opponent_of(user_id)
    if match.winner_id is None:
        winner = 'draw'
    elif match.winner_id == user_id:
        winner = 'you'
    else:
        winner = 'opponent'
    return {
        'matchId': match.id,
        'yourScore': match.score_of(user_id),
        'opponentScore': match.score_of(opponent_id),
        'winner': winner,
        'winnerId': match.winner_id,
        'prizeAmount': str(match.prize_amount) if match.prize_amount is not None else None,
        'correctAnswers': list(correct_answers),
    }
