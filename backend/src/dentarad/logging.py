"""Structured logging configuration for DentaRad.

Provides JSON-formatted logs for production and human-readable
logs for development.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .config import get_settings

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.funcName:
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable log formatter for development."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def setup_logging() -> None:
    """Configure logging based on settings."""
    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # Suppress noisy loggers
    for noisy in ("urllib3", "httpx", "httpcore", "botocore", "boto3", "s3transfer", "openai", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = get_logger(__name__)
    logger.info(
        "Logging initialized",
        extra={
            "environment": settings.environment,
            "log_level": settings.log_level,
            "log_format": settings.log_format,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds context to all log messages."""

    def process(
        self, msg: str, kwargs: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        """Process the logging message and add extra context."""
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def get_context_logger(name: str, **context: Any) -> LoggerAdapter:
    """Get a logger with additional context.

    Args:
        name: Logger name
        **context: Context fields to add to all log messages

    Returns:
        Logger adapter with context

    Usage:
        logger = get_context_logger(__name__, case_id="abc", folder="SMITH_JOHN_00012")
        logger.info("Scan uploaded")  # Includes case_id and folder
    """
    return LoggerAdapter(get_logger(name), context)


# =========================
# Convenience functions
# =========================


def log_case_event(case_id: str, action: str, **details: Any) -> None:
    """Log a case lifecycle event (created, status_changed, deleted)."""
    logger = get_logger("dentarad.cases")
    logger.info(
        f"Case {case_id}: {action}",
        extra={"case_id": case_id, "action": action, **details, "event": "case_event"},
    )


def log_upload_progress(
    case_id: str,
    percentage: float,
    uploaded_mb: float,
    total_mb: float,
    destination: str,
) -> None:
    """Log progress of a scan upload.

    Args:
        case_id: Case being uploaded
        percentage: Percentage complete (0-100)
        uploaded_mb: Megabytes sent so far
        total_mb: Total megabytes
        destination: Upload target (storage, dropbox)
    """
    logger = get_logger("dentarad.uploads")
    logger.debug(
        f"Upload progress for {case_id}: {percentage:.1f}%",
        extra={
            "case_id": case_id,
            "percentage": percentage,
            "uploaded_mb": uploaded_mb,
            "total_mb": total_mb,
            "destination": destination,
            "event": "upload_progress",
        },
    )


def log_report_event(report_id: str, case_id: str | None, action: str, **details: Any) -> None:
    """Log a report event (created, saved, versioned, signed, finalized)."""
    logger = get_logger("dentarad.reports")
    logger.info(
        f"Report {report_id}: {action}",
        extra={
            "report_id": report_id,
            "case_id": case_id,
            "action": action,
            **details,
            "event": "report_event",
        },
    )


def log_payment_event(
    event_type: str,
    clinic_id: str | None,
    cases_updated: int = 0,
    stripe_invoice_id: str | None = None,
) -> None:
    """Log a payment webhook outcome."""
    logger = get_logger("dentarad.billing")
    logger.info(
        f"Payment event {event_type}",
        extra={
            "event_type": event_type,
            "clinic_id": clinic_id,
            "cases_updated": cases_updated,
            "stripe_invoice_id": stripe_invoice_id,
            "event": "payment_event",
        },
    )


def log_email_sent(kind: str, recipient: str, message_id: str | None) -> None:
    """Log a transactional email."""
    logger = get_logger("dentarad.notifications")
    logger.info(
        f"Email sent: {kind}",
        extra={
            "kind": kind,
            "recipient": recipient,
            "message_id": message_id,
            "event": "email_sent",
        },
    )


def log_api_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    user_id: str | None = None,
    request_id: str | None = None,
) -> None:
    """Log an API request.

    Args:
        method: HTTP method
        path: Request path
        status_code: Response status code
        duration_ms: Request duration in milliseconds
        user_id: Authenticated user ID
        request_id: Request correlation ID
    """
    logger = get_logger("dentarad.api")
    logger.info(
        f"{method} {path} - {status_code}",
        extra={
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
            "user_id": user_id,
            "request_id": request_id,
            "event": "api_request",
        },
    )
