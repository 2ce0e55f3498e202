"""Idle session tracking.

Sessions expire after 30 minutes without activity, and the client is
told to warn the user two minutes before that.
"""

import asyncio
import time
from collections.abc import Callable
from enum import Enum

from pydantic import BaseModel

from ..config import get_settings


class SessionState(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"


class SessionStatus(BaseModel):
    state: SessionState
    seconds_remaining: int


class SessionTracker:
    """In-process record of the last activity per session."""

    def __init__(
        self,
        timeout_seconds: int | None = None,
        warning_seconds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.timeout_seconds = timeout_seconds or settings.session_timeout_minutes * 60
        self.warning_seconds = warning_seconds or settings.session_warning_minutes * 60
        self._clock = clock
        self._last_activity: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def touch(self, session_id: str) -> SessionStatus:
        """Record activity. An already expired session stays expired."""
        async with self._lock:
            status = self._status(session_id)
            if status.state != SessionState.EXPIRED:
                self._last_activity[session_id] = self._clock()
                return SessionStatus(state=SessionState.ACTIVE, seconds_remaining=self.timeout_seconds)
            return status

    async def state(self, session_id: str) -> SessionStatus:
        async with self._lock:
            return self._status(session_id)

    async def end(self, session_id: str) -> None:
        async with self._lock:
            self._last_activity.pop(session_id, None)

    def _status(self, session_id: str) -> SessionStatus:
        last = self._last_activity.get(session_id)
        if last is None:
            # First sighting starts the clock.
            self._last_activity[session_id] = self._clock()
            return SessionStatus(state=SessionState.ACTIVE, seconds_remaining=self.timeout_seconds)

        remaining = self.timeout_seconds - (self._clock() - last)
        if remaining <= 0:
            return SessionStatus(state=SessionState.EXPIRED, seconds_remaining=0)
        if remaining <= self.warning_seconds:
            return SessionStatus(state=SessionState.WARNING, seconds_remaining=int(remaining))
        return SessionStatus(state=SessionState.ACTIVE, seconds_remaining=int(remaining))


_tracker: SessionTracker | None = None


def get_session_tracker() -> SessionTracker:
    global _tracker
    if _tracker is None:
        _tracker = SessionTracker()
    return _tracker
