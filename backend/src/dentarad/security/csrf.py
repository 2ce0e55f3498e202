"""CSRF tokens for state-changing browser requests.

A token is a random UUID stored on the user's profile with a one hour
expiry. The browser echoes it in the ``X-CSRF-Token`` header.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..db import use_session

logger = logging.getLogger(__name__)


class CsrfService:
    def __init__(self, session: AsyncSession | None = None, ttl: timedelta | None = None):
        self._session = session
        self.ttl = ttl or timedelta(minutes=get_settings().csrf_token_ttl_minutes)

    async def issue(self, user_id: str) -> tuple[str, datetime]:
        """Create a fresh token for ``user_id`` and store it on the profile."""
        token = str(uuid4())
        expires_at = datetime.now(timezone.utc) + self.ttl
        async with use_session(self._session) as session:
            await session.execute(
                text("""
                UPDATE profiles
                SET csrf_token = :token, csrf_token_expires_at = :expires_at
                WHERE id = :user_id
                """),
                {"token": token, "expires_at": expires_at, "user_id": user_id},
            )
        return token, expires_at

    async def verify(self, user_id: str, token: str | None, now: datetime | None = None) -> bool:
        """Check ``token`` against the stored one. Expired tokens fail."""
        if not token:
            return False
        now = now or datetime.now(timezone.utc)
        async with use_session(self._session) as session:
            result = await session.execute(
                text("SELECT csrf_token, csrf_token_expires_at FROM profiles WHERE id = :user_id"),
                {"user_id": user_id},
            )
            row = result.fetchone()

        if row is None or not row.csrf_token or row.csrf_token_expires_at is None:
            return False
        if not secrets.compare_digest(row.csrf_token, token):
            return False
        return now < row.csrf_token_expires_at
