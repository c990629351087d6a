"""auth/clock.py -- Injectable UTC clock.

Managers take a `clock` callable instead of calling datetime.now() so tests
can move time forward without sleeping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
