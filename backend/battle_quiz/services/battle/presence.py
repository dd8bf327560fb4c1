"""Who is connected, and how long a dropped player has to come back."""

import time
from typing import List, Optional, Tuple

from flask import current_app

from .ephemeral import ExpiringStore

# user_id -> (match_id or None while not in a match, reconnect deadline)
_disconnected = ExpiringStore()


def mark_disconnected(user_id: int, match_id: Optional[int], now: Optional[float] = None) -> float:
    now = now if now is not None else time.time()
    grace = float(current_app.config.get('DISCONNECT_GRACE_SEC', 30))
    deadline = now + grace
    # Keep the entry around past the deadline so the sweeper can still see it
    _disconnected.set(user_id, (match_id, deadline), ttl=grace + float(current_app.config.get('ABANDON_TIMEOUT_SEC', 600)))
    return deadline


def mark_connected(user_id: int) -> Optional[int]:
    """Clear a pending grace deadline; returns the match it belonged to."""
    entry = _disconnected.pop(user_id)
    return entry[0] if entry else None


def is_disconnected(user_id: int) -> bool:
    return user_id in _disconnected


def lapsed(now: Optional[float] = None) -> List[Tuple[int, int]]:
    """(user_id, match_id) pairs whose reconnect deadline has passed.

    Offline users without a match are not reported; their grace starts
    once they are paired.
    """
    now = now if now is not None else time.time()
    out = []
    for user_id in _disconnected.keys():
        entry = _disconnected.get(user_id)
        if entry and entry[0] is not None and entry[1] <= now:
            out.append((user_id, entry[0]))
    return out


def reset() -> None:
    _disconnected.clear()
