"""Celery worker configuration for DentaRad.

Runs the periodic housekeeping jobs: invoice reminders, download bundle
pregeneration and Dropbox sync of new cases.
"""

from celery import Celery
from celery.schedules import crontab

from .config import get_settings

settings = get_settings()

app = Celery(
    "dentarad",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=1800,
    task_soft_time_limit=1650,
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=2,
    # Result backend
    result_expires=86400,
    # Task routing
    task_routes={
        "dentarad.tasks.pregenerate_case_zips": {"queue": "bundles"},
        "dentarad.tasks.*": {"queue": "default"},
    },
    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    # Overdue marking and payment reminders (every day at 9 AM UTC)
    "process-invoice-reminders-daily": {
        "task": "dentarad.tasks.process_invoice_reminders",
        "schedule": crontab(hour=9, minute=0),
    },
    "pregenerate-case-zips": {
        "task": "dentarad.tasks.pregenerate_case_zips",
        "schedule": crontab(minute="*/15"),
        "options": {"queue": "bundles"},
    },
    "sync-pending-cases-to-dropbox": {
        "task": "dentarad.tasks.sync_pending_cases_to_dropbox",
        "schedule": crontab(minute="*/10"),
    },
}


app.autodiscover_tasks(["dentarad"], force=True)
