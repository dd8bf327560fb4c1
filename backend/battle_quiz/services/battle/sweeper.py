from datetime import timedelta

from battle_quiz import db, socketio
from battle_quiz.models import Match, utcnow
from flask import current_app
from . import matchmaker, orchestrator, presence
from .ephemeral import ExpiringStore
from .errors import BattleError


_payout_attempts = ExpiringStore()


def abandon_idle_matches(now=None) -> int:
    """Void matches that saw no answer for ABANDON_TIMEOUT_SEC."""
    now = now or utcnow()
    timeout = int(current_app.config.get('ABANDON_TIMEOUT_SEC', 600))
    cutoff = now - timedelta(seconds=timeout)
    idle_ids = [m.id for m in Match.query
                .filter(Match.status.in_(Match.ACTIVE_STATUSES), Match.last_activity_at <= cutoff)
                .order_by(Match.id)
                .all()]
    count = 0
    for match_id in idle_ids:
        try:
            if orchestrator.abandon(match_id, 'idle'):
                count += 1
        except BattleError as exc:
            db.session.rollback()
            current_app.logger.warning(f"[sweep-abandon-skip] match={match_id} error={exc.code}")
    return count


def abandon_disconnected(now_ts=None) -> int:
    """Void matches whose dropped player did not return within the grace period."""
    count = 0
    for user_id, match_id in presence.lapsed(now_ts):
        presence.mark_connected(user_id)
        try:
            if orchestrator.abandon(match_id, 'disconnect'):
                count += 1
        except BattleError as exc:
            db.session.rollback()
            current_app.logger.warning(f"[sweep-abandon-skip] match={match_id} error={exc.code}")
    return count


def retry_pending_payouts() -> int:
    max_retries = int(current_app.config.get('PAYOUT_MAX_RETRIES', 10))
    pending_ids = [m.id for m in Match.query
                   .filter_by(status=Match.FINISHED, payout_status=Match.PAYOUT_PENDING)
                   .order_by(Match.id)
                   .all()]
    paid = 0
    for match_id in pending_ids:
        attempt = _payout_attempts.incr(match_id, ttl=3600)
        if attempt > max_retries:
            current_app.logger.error(f"[payout-stuck] match={match_id} attempts={attempt - 1}")
            continue
        try:
            if orchestrator.settle_payout(match_id):
                paid += 1
                _payout_attempts.pop(match_id)
        except Exception:
            db.session.rollback()
            current_app.logger.exception(f"[payout-retry-failed] match={match_id} attempt={attempt}")
    return paid


def run_sweeps(now=None, now_ts=None) -> dict:
    summary = {
        'waiting_expired': matchmaker.expire_waiting(now),
        'abandoned_disconnected': abandon_disconnected(now_ts),
        'abandoned_idle': abandon_idle_matches(now),
        'payouts_settled': retry_pending_payouts(),
    }
    if any(summary.values()):
        current_app.logger.info(f"[sweep] {summary}")
    return summary


def start_sweeper(app) -> None:
    """Run the sweeps periodically in a background task.

    No-ops in TESTING mode or when SWEEP_INTERVAL_SEC is 0.
    """
    if app.config.get('TESTING'):
        return
    interval = int(app.config.get('SWEEP_INTERVAL_SEC', 0))
    if interval <= 0:
        return

    def _worker():
        while True:
            socketio.sleep(interval)
            with app.app_context():
                try:
                    run_sweeps()
                except Exception:
                    db.session.rollback()
                    app.logger.exception("[sweep-failed]")
                finally:
                    db.session.remove()

    app.logger.info(f"[sweeper] started interval={interval}s")
    socketio.start_background_task(_worker)


def reset() -> None:
    _payout_attempts.clear()
