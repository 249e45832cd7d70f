"""
core/clock.py -- The single authoritative time source.

Every expiry comparison (tokens, sessions, lockouts, invitations) goes through
a Clock so that all of them agree on "now", and so tests can move time
forward without sleeping. A Clock is any zero-argument callable returning a
timezone-aware UTC datetime.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
