"""Periodic background jobs, executed by the Celery worker."""

import asyncio
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from .api import NotFoundError
from .billing.invoices import InvoiceManager
from .db import close_all_connections
from .logging import get_logger
from .uploads.downloads import DownloadService
from .uploads.dropbox import DropboxError, get_dropbox_client
from .uploads.service import UploadService
from .worker import app as celery_app

logger = get_logger(__name__)

BATCH_SIZE = 20


def _run(coro) -> Any:
    """Run a job on a fresh event loop and release its connections afterwards."""

    async def runner():
        try:
            return await coro
        finally:
            await get_dropbox_client().close()
            await close_all_connections()

    return asyncio.run(runner())


@celery_app.task
def process_invoice_reminders() -> dict[str, Any]:
    """Mark overdue invoices and email payment reminders."""

    async def run():
        manager = InvoiceManager()
        try:
            summary = await manager.process_invoice_reminders()
        finally:
            await manager.email.close()
        return summary.model_dump(mode="json")

    return _run(run())


async def pregenerate_bundles(service: DownloadService, limit: int = BATCH_SIZE) -> dict[str, int]:
    """Build the download bundle of each reported case that lacks one."""
    completed = failed = 0
    for case_id in await service.cases_needing_bundles(limit):
        try:
            await service.pregenerate_case_zip(case_id)
            completed += 1
        except (ValueError, BotoCoreError, ClientError) as e:
            failed += 1
            logger.warning(f"Bundle pregeneration failed for case {case_id}: {e}")
    return {"completed": completed, "failed": failed}


async def sync_pending_cases(service: UploadService, limit: int = BATCH_SIZE) -> dict[str, int]:
    """Mirror cases whose scan is stored but not yet synced to Dropbox."""
    synced = failed = 0
    for case_id in await service.pending_dropbox_syncs(limit):
        try:
            await service.sync_case_to_dropbox(case_id)
            synced += 1
        except (DropboxError, NotFoundError, BotoCoreError, ClientError) as e:
            failed += 1
            logger.warning(f"Dropbox sync failed for case {case_id}: {e}")
    return {"synced": synced, "failed": failed}


@celery_app.task
def pregenerate_case_zips() -> dict[str, int]:
    result = _run(pregenerate_bundles(DownloadService()))
    logger.info(f"Bundle pregeneration: {result}")
    return result


@celery_app.task
def sync_pending_cases_to_dropbox() -> dict[str, int]:
    result = _run(sync_pending_cases(UploadService()))
    logger.info(f"Dropbox sync: {result}")
    return result
