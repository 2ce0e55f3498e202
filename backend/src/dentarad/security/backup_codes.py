"""MFA backup codes.

Codes are shown to the user once; only their bcrypt hashes are stored,
in ``profiles.backup_codes``. A code works exactly once.
"""

import json
import logging
import secrets

import bcrypt
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import use_session

logger = logging.getLogger(__name__)

# No 0/O or 1/I to keep codes readable.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8


def generate_backup_codes(count: int = 10) -> tuple[list[str], list[str]]:
    """Generate plain codes and their bcrypt hashes.

    Returns:
        Tuple of (codes to show the user, hashes to store)
    """
    codes = [
        "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        for _ in range(count)
    ]
    hashes = [bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt()).decode("utf-8") for code in codes]
    return codes, hashes


def match_backup_code(code: str, hashes: list[str]) -> int | None:
    """Index of the hash that ``code`` matches, if any."""
    candidate = code.strip().upper().encode("utf-8")
    for index, hashed in enumerate(hashes):
        if bcrypt.checkpw(candidate, hashed.encode("utf-8")):
            return index
    return None


class BackupCodeService:
    def __init__(self, session: AsyncSession | None = None):
        self._session = session

    async def _load(self, session: AsyncSession, user_id: str) -> list[str]:
        result = await session.execute(
            text("SELECT backup_codes FROM profiles WHERE id = :user_id"),
            {"user_id": user_id},
        )
        row = result.fetchone()
        codes = row.backup_codes if row is not None else None
        return list(codes) if isinstance(codes, list) else []

    async def regenerate(self, user_id: str, count: int = 10) -> list[str]:
        """Replace the user's backup codes and return the new plain codes."""
        codes, hashes = generate_backup_codes(count)
        async with use_session(self._session) as session:
            await session.execute(
                text("UPDATE profiles SET backup_codes = CAST(:codes AS jsonb) WHERE id = :user_id"),
                {"codes": json.dumps(hashes), "user_id": user_id},
            )
        return codes

    async def verify_and_consume(self, user_id: str, code: str) -> bool:
        """Check a backup code and remove it if it matches."""
        async with use_session(self._session) as session:
            hashes = await self._load(session, user_id)
            index = match_backup_code(code, hashes)
            if index is None:
                logger.warning(f"Backup code rejected for user {user_id}")
                return False

            del hashes[index]
            await session.execute(
                text("UPDATE profiles SET backup_codes = CAST(:codes AS jsonb) WHERE id = :user_id"),
                {"codes": json.dumps(hashes), "user_id": user_id},
            )
        logger.info(f"Backup code used for user {user_id}, {len(hashes)} remaining")
        return True

    async def remaining(self, user_id: str) -> int:
        async with use_session(self._session) as session:
            return len(await self._load(session, user_id))
