"""Unit tests for CSRF tokens, backup codes, login lockout and idle sessions."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from dentarad.security.backup_codes import (
    CODE_ALPHABET,
    CODE_LENGTH,
    BackupCodeService,
    generate_backup_codes,
    match_backup_code,
)
from dentarad.security.csrf import CsrfService
from dentarad.security.login_limiter import LoginRateLimiter
from dentarad.security.session import SessionState, SessionTracker
from fixtures.database import result_with_rows

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestCsrf:
    @pytest.mark.asyncio
    async def test_issue_stores_token(self, mock_db_session):
        service = CsrfService(session=mock_db_session, ttl=timedelta(minutes=60))
        token, expires_at = await service.issue("user-1")

        params = mock_db_session.execute.await_args.args[1]
        assert params["token"] == token
        assert params["user_id"] == "user-1"
        assert expires_at > datetime.now(timezone.utc) + timedelta(minutes=59)

    @pytest.mark.asyncio
    async def test_verify(self, mock_db_session):
        mock_db_session.execute = AsyncMock(
            return_value=result_with_rows(
                [{"csrf_token": "tok", "csrf_token_expires_at": NOW + timedelta(minutes=5)}]
            )
        )
        service = CsrfService(session=mock_db_session, ttl=timedelta(minutes=60))

        assert await service.verify("user-1", "tok", now=NOW)
        assert not await service.verify("user-1", "other", now=NOW)
        assert not await service.verify("user-1", "tok", now=NOW + timedelta(minutes=5))
        assert not await service.verify("user-1", None, now=NOW)

    @pytest.mark.asyncio
    async def test_verify_without_stored_token(self, mock_db_session):
        service = CsrfService(session=mock_db_session, ttl=timedelta(minutes=60))
        assert not await service.verify("user-1", "tok", now=NOW)


class TestBackupCodes:
    def test_generated_codes_match_their_hashes(self):
        codes, hashes = generate_backup_codes(count=2)

        assert len(codes) == len(hashes) == 2
        for code in codes:
            assert len(code) == CODE_LENGTH
            assert set(code) <= set(CODE_ALPHABET)
        assert match_backup_code(codes[1].lower() + " ", hashes) == 1
        assert match_backup_code("ZZZZZZZZ", hashes) is None

    @pytest.mark.asyncio
    async def test_code_is_consumed(self, mock_db_session):
        codes, hashes = generate_backup_codes(count=2)
        mock_db_session.execute = AsyncMock(
            side_effect=[result_with_rows([{"backup_codes": hashes}]), result_with_rows([])]
        )

        assert await BackupCodeService(session=mock_db_session).verify_and_consume("user-1", codes[0])
        stored = json.loads(mock_db_session.execute.await_args_list[1].args[1]["codes"])
        assert stored == hashes[1:]

    @pytest.mark.asyncio
    async def test_wrong_code_changes_nothing(self, mock_db_session):
        _, hashes = generate_backup_codes(count=1)
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([{"backup_codes": hashes}]))

        assert not await BackupCodeService(session=mock_db_session).verify_and_consume("user-1", "AAAAAAAA")
        assert mock_db_session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_remaining_without_codes(self, mock_db_session):
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([{"backup_codes": None}]))
        assert await BackupCodeService(session=mock_db_session).remaining("user-1") == 0


class TestLoginRateLimiter:
    @pytest.mark.asyncio
    async def test_locked_account_reports_minutes(self, mock_db_session):
        mock_db_session.execute = AsyncMock(
            return_value=result_with_rows(
                [{"locked": True, "unlock_at": NOW + timedelta(minutes=11, seconds=10), "attempts": 5}]
            )
        )
        result = await LoginRateLimiter(session=mock_db_session).check("a@b.com", now=NOW)

        assert result.allowed is False
        assert result.lockout_minutes == 12
        assert result.attempts == 5

    @pytest.mark.asyncio
    async def test_unlocked_account(self, mock_db_session):
        mock_db_session.execute = AsyncMock(
            return_value=result_with_rows([{"locked": False, "unlock_at": None, "attempts": 2}])
        )
        assert (await LoginRateLimiter(session=mock_db_session).check("a@b.com")).allowed

    @pytest.mark.asyncio
    async def test_database_failure_allows_login(self, mock_db_session):
        mock_db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
        limiter = LoginRateLimiter(session=mock_db_session)

        assert (await limiter.check("a@b.com")).allowed
        await limiter.record_attempt("a@b.com", successful=False)

        assert mock_db_session.begin_nested.call_count == 2
        assert mock_db_session.savepoint.rolled_back

    @pytest.mark.asyncio
    async def test_record_attempt_passes_named_arguments(self, mock_db_session):
        await LoginRateLimiter(session=mock_db_session).record_attempt("a@b.com", True, ip_address="10.0.0.1")

        sql, params = mock_db_session.execute.await_args.args
        assert "record_login_attempt(p_email => :p_email" in str(sql)
        assert params["p_successful"] is True
        assert params["p_ip_address"] == "10.0.0.1"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestSessionTracker:
    @pytest.mark.asyncio
    async def test_active_warning_expired(self):
        clock = FakeClock()
        tracker = SessionTracker(timeout_seconds=1800, warning_seconds=120, clock=clock)

        assert (await tracker.touch("s1")).state == SessionState.ACTIVE

        clock.now = 1700
        status = await tracker.state("s1")
        assert status.state == SessionState.WARNING
        assert status.seconds_remaining == 100

        clock.now = 1800
        assert (await tracker.state("s1")).state == SessionState.EXPIRED

    @pytest.mark.asyncio
    async def test_activity_resets_timer(self):
        clock = FakeClock()
        tracker = SessionTracker(timeout_seconds=1800, warning_seconds=120, clock=clock)
        await tracker.touch("s1")

        clock.now = 1000
        await tracker.touch("s1")
        clock.now = 2000
        assert (await tracker.state("s1")).state == SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_expired_session_cannot_be_revived(self):
        clock = FakeClock()
        tracker = SessionTracker(timeout_seconds=60, warning_seconds=10, clock=clock)
        await tracker.touch("s1")

        clock.now = 61
        assert (await tracker.touch("s1")).state == SessionState.EXPIRED

        await tracker.end("s1")
        assert (await tracker.touch("s1")).state == SessionState.ACTIVE
