"""Upload quotas.

A clinic may open at most 20 cases an hour, and a single user may send
at most 20 scans in 24 hours. Both are counted in Postgres so every API
worker sees the same totals.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..api import RateLimitError
from ..config import get_settings
from ..db import use_savepoint, use_session

logger = logging.getLogger(__name__)

CLINIC_WINDOW = timedelta(hours=1)
USER_WINDOW = timedelta(hours=24)


class UploadRateLimiter:
    def __init__(self, session: AsyncSession | None = None):
        self._session = session
        settings = get_settings()
        self.clinic_limit = settings.uploads_per_clinic_per_hour
        self.user_limit = settings.uploads_per_user_per_day

    async def check_clinic(self, clinic_id: str, now: datetime | None = None) -> None:
        """Raise if the clinic has opened too many cases in the last hour.

        A failing count query lets the upload through.

        Raises:
            RateLimitError: With ``Retry-After: 3600``
        """
        now = now or datetime.now(timezone.utc)
        try:
            async with use_savepoint(self._session) as session:
                result = await session.execute(
                    text("SELECT COUNT(*) FROM cases WHERE clinic_id = :clinic_id AND created_at >= :since"),
                    {"clinic_id": str(clinic_id), "since": now - CLINIC_WINDOW},
                )
                count = result.scalar() or 0
        except SQLAlchemyError as e:
            logger.warning(f"Upload rate limit check failed for clinic {clinic_id}, allowing upload: {e}")
            return

        if count >= self.clinic_limit:
            logger.warning(f"Upload rate limit exceeded for clinic {clinic_id}")
            raise RateLimitError(
                retry_after=3600,
                message=(
                    f"Upload limit exceeded. Your clinic can upload a maximum of "
                    f"{self.clinic_limit} cases per hour. Please try again later."
                ),
            )

    async def remaining_for_user(self, user_id: str, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        async with use_session(self._session) as session:
            result = await session.execute(
                text("SELECT COUNT(*) FROM upload_rate_limits WHERE user_id = :user_id AND upload_timestamp >= :since"),
                {"user_id": user_id, "since": now - USER_WINDOW},
            )
            count = result.scalar() or 0
        return max(0, self.user_limit - count)

    async def check_user(self, user_id: str) -> None:
        """Raise if the user has sent too many scans in 24 hours."""
        if await self.remaining_for_user(user_id) <= 0:
            raise RateLimitError(
                retry_after=int(USER_WINDOW.total_seconds()),
                message=f"Upload limit reached ({self.user_limit} uploads per 24 hours)",
            )

    async def record(self, user_id: str, file_size: int, file_type: str = "application/zip") -> None:
        """Count a completed upload. Failures are logged, not raised."""
        try:
            async with use_savepoint(self._session) as session:
                await session.execute(
                    text("""
                    INSERT INTO upload_rate_limits (user_id, file_size, file_type)
                    VALUES (:user_id, :file_size, :file_type)
                    """),
                    {"user_id": user_id, "file_size": file_size, "file_type": file_type},
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to record upload for {user_id}: {e}")
