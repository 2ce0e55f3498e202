"""Login lockout checks backed by the ``login_attempts`` table.

The lockout policy itself (attempt threshold and window) lives in the
``is_account_locked`` database function.
"""

import logging
import math
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import call_rpc, use_savepoint

logger = logging.getLogger(__name__)


class LoginCheckResult(BaseModel):
    allowed: bool
    lockout_minutes: int | None = None
    attempts: int | None = None


class LoginRateLimiter:
    def __init__(self, session: AsyncSession | None = None):
        self._session = session

    async def check(self, email: str, now: datetime | None = None) -> LoginCheckResult:
        """Check whether ``email`` may attempt a login.

        Database errors allow the attempt; the failure is logged.
        """
        try:
            async with use_savepoint(self._session) as session:
                rows = await call_rpc(session, "is_account_locked", p_email=email)
        except SQLAlchemyError as e:
            logger.error(f"Login rate limit check failed for {email}: {e}")
            return LoginCheckResult(allowed=True)

        if rows and rows[0].get("locked"):
            row = rows[0]
            now = now or datetime.now(timezone.utc)
            seconds = (row["unlock_at"] - now).total_seconds()
            return LoginCheckResult(
                allowed=False,
                lockout_minutes=max(0, math.ceil(seconds / 60)),
                attempts=row.get("attempts"),
            )
        return LoginCheckResult(allowed=True)

    async def record_attempt(
        self,
        email: str,
        successful: bool,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        try:
            async with use_savepoint(self._session) as session:
                await call_rpc(
                    session,
                    "record_login_attempt",
                    p_email=email,
                    p_successful=successful,
                    p_ip_address=ip_address,
                    p_user_agent=user_agent,
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to record login attempt for {email}: {e}")
