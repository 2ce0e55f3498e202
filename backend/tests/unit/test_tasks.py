"""Unit tests for the periodic worker jobs."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from dentarad import tasks
from dentarad.api import NotFoundError
from dentarad.billing.invoices import ReminderSummary
from dentarad.uploads.dropbox import DropboxError
from dentarad.worker import app as celery_app


class TestBeatSchedule:
    def test_jobs_are_scheduled(self):
        schedule = celery_app.conf.beat_schedule
        assert schedule["process-invoice-reminders-daily"]["task"] == "dentarad.tasks.process_invoice_reminders"
        assert schedule["pregenerate-case-zips"]["options"] == {"queue": "bundles"}
        assert schedule["sync-pending-cases-to-dropbox"]["task"] == "dentarad.tasks.sync_pending_cases_to_dropbox"

    def test_tasks_are_registered(self):
        assert "dentarad.tasks.pregenerate_case_zips" in celery_app.tasks


class TestBundleJob:
    @pytest.mark.asyncio
    async def test_counts_successes_and_failures(self):
        service = MagicMock()
        service.cases_needing_bundles = AsyncMock(return_value=["a", "b", "c"])
        service.pregenerate_case_zip = AsyncMock(
            side_effect=[
                "a_complete.zip",
                ValueError("No files found for case"),
                ClientError({"Error": {"Code": "500", "Message": "x"}}, "PutObject"),
            ]
        )

        result = await tasks.pregenerate_bundles(service, limit=5)

        assert result == {"completed": 1, "failed": 2}
        service.cases_needing_bundles.assert_awaited_once_with(5)


class TestDropboxJob:
    @pytest.mark.asyncio
    async def test_counts_successes_and_failures(self):
        service = MagicMock()
        service.pending_dropbox_syncs = AsyncMock(return_value=["a", "b", "c", "d"])
        service.sync_case_to_dropbox = AsyncMock(
            side_effect=[
                {},
                DropboxError("down", 503),
                NotFoundError("Case", "c"),
                ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject"),
            ]
        )

        assert await tasks.sync_pending_cases(service) == {"synced": 1, "failed": 3}

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self):
        service = MagicMock()
        service.pending_dropbox_syncs = AsyncMock(return_value=["a"])
        service.sync_case_to_dropbox = AsyncMock(side_effect=RuntimeError("bug"))

        with pytest.raises(RuntimeError):
            await tasks.sync_pending_cases(service)


def test_invoice_reminder_task_releases_connections():
    manager = MagicMock()
    manager.process_invoice_reminders = AsyncMock(
        return_value=ReminderSummary(processed_at="2026-04-01T09:00:00Z", reminders_sent=2)
    )
    manager.email.close = AsyncMock()
    dropbox = MagicMock()
    dropbox.close = AsyncMock()

    with patch.object(tasks, "InvoiceManager", return_value=manager), \
            patch.object(tasks, "get_dropbox_client", return_value=dropbox), \
            patch.object(tasks, "close_all_connections", new=AsyncMock()) as close_all:
        result = tasks.process_invoice_reminders()

    assert result["reminders_sent"] == 2
    manager.email.close.assert_awaited_once()
    dropbox.close.assert_awaited_once()
    close_all.assert_awaited_once()
