"""In-app and email notifications for case events."""

import json
import re
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..api import NotFoundError, ValidationError
from ..config import get_settings
from ..db import use_session
from ..logging import get_context_logger
from ..security.sanitization import sanitize_text
from .email import EmailClient, EmailMessage, get_email_client

logger = get_context_logger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")


class NotificationType(str, Enum):
    NEW_CASE = "new_case"
    STATUS_CHANGE = "status_change"
    URGENT_CASE = "urgent_case"
    DAILY_SUMMARY = "daily_summary"


class NotificationData(BaseModel):
    case_id: str | None = None
    patient_name: str | None = None
    clinic_name: str | None = None
    old_status: str | None = None
    new_status: str | None = None
    urgency: str | None = None
    clinical_question: str | None = None
    counts: dict[str, int] = Field(default_factory=dict)


class NotificationResult(BaseModel):
    sent: bool
    message: str | None = None
    email_id: str | None = None


def _button(url: str, label: str, colour: str = "#3b82f6") -> str:
    return (
        f'<p><a href="{url}" style="background-color: {colour}; color: white; '
        f'padding: 10px 20px; text-decoration: none; border-radius: 5px;">{label}</a></p>'
    )


def render_notification(kind: NotificationType, data: NotificationData, app_url: str) -> tuple[str, str]:
    """Subject and HTML body for a notification.

    Values are escaped before they are placed in the HTML.
    """
    patient = sanitize_text(data.patient_name)
    clinic = sanitize_text(data.clinic_name)
    question = sanitize_text(data.clinical_question)

    if kind == NotificationType.NEW_CASE:
        subject = f"New Case Upload: {data.patient_name}"
        body = (
            "<h2>New Case Submitted</h2>"
            f"<p><strong>Patient:</strong> {patient}</p>"
            f"<p><strong>Clinic:</strong> {clinic}</p>"
            f"<p><strong>Clinical Question:</strong> {question}</p>"
            f"<p><strong>Urgency:</strong> {sanitize_text(data.urgency)}</p>"
            "<p>Please review this case in your admin dashboard.</p>"
            + _button(f"{app_url}/admin", "View Dashboard")
        )
    elif kind == NotificationType.STATUS_CHANGE:
        subject = f"Case Status Update: {data.patient_name}"
        body = (
            "<h2>Case Status Updated</h2>"
            f"<p><strong>Patient:</strong> {patient}</p>"
            f"<p><strong>Status changed from:</strong> {sanitize_text(data.old_status)} "
            f"&rarr; {sanitize_text(data.new_status)}</p>"
            "<p>Check your dashboard for the latest updates.</p>"
            + _button(f"{app_url}/dashboard", "View Dashboard")
        )
    elif kind == NotificationType.URGENT_CASE:
        subject = f"🚨 URGENT Case: {data.patient_name}"
        body = (
            '<h2 style="color: #dc2626;">🚨 URGENT CASE ALERT</h2>'
            f"<p><strong>Patient:</strong> {patient}</p>"
            f"<p><strong>Clinic:</strong> {clinic}</p>"
            f"<p><strong>Clinical Question:</strong> {question}</p>"
            '<p style="color: #dc2626; font-weight: bold;">This case requires immediate attention.</p>'
            + _button(f"{app_url}/admin", "Review Immediately", "#dc2626")
        )
    else:
        subject = "Daily Case Summary"
        rows = "".join(
            f"<li><strong>{sanitize_text(status)}:</strong> {count}</li>"
            for status, count in data.counts.items()
        )
        body = (
            "<h2>Daily Case Summary</h2>"
            f"<ul>{rows}</ul>"
            + _button(f"{app_url}/dashboard", "View Dashboard")
        )
    return subject, body


class NotificationService:
    def __init__(self, session: AsyncSession | None = None, email: EmailClient | None = None):
        self._session = session
        self._email = email

    @property
    def email(self) -> EmailClient:
        if self._email is None:
            self._email = get_email_client()
        return self._email

    async def send_notification(
        self,
        kind: NotificationType | str,
        recipient_id: UUID | str,
        data: NotificationData,
    ) -> NotificationResult:
        """Email a user about a case event and record it as a notification.

        Users who turned off ``email_{kind}`` in their preferences are skipped.

        Raises:
            ValidationError: For an unknown notification type
            NotFoundError: If the recipient has no profile
            EmailError: If the email cannot be sent
        """
        try:
            kind = NotificationType(kind)
        except ValueError:
            raise ValidationError("Invalid notification type")

        async with use_session(self._session) as session:
            result = await session.execute(
                text("SELECT email, notification_preferences FROM profiles WHERE id = :id"),
                {"id": str(recipient_id)},
            )
            profile = result.fetchone()
        if profile is None:
            raise NotFoundError("User", recipient_id)

        preferences = profile.notification_preferences or {}
        if preferences.get(f"email_{kind.value}") is False:
            return NotificationResult(sent=False, message="Notification disabled by user")

        settings = get_settings()
        subject, body = render_notification(kind, data, settings.app_url)
        email_id = await self.email.send(
            EmailMessage(
                sender=settings.email_from_notifications,
                to=[profile.email],
                subject=subject,
                html=body,
            ),
            kind=kind.value,
        )

        await self._record(recipient_id, kind.value, subject, body, data.model_dump(exclude_none=True))
        return NotificationResult(sent=True, email_id=email_id)

    async def send_report_ready(self, case) -> str | None:
        """Tell a clinic its report is ready to download."""
        if not case.clinic_email:
            logger.warning(f"No clinic email for case {case.id}, report-ready email skipped")
            return None

        settings = get_settings()
        patient = sanitize_text(case.patient_name)
        body = (
            "<h2>Report Ready</h2>"
            f"<p>The CBCT report for <strong>{patient}</strong> is ready.</p>"
            + _button(f"{settings.app_url}/viewer/{case.id}", "View &amp; Download Report", "#0066cc")
            + "<h3>Case Details:</h3><ul>"
            f"<li><strong>Patient:</strong> {patient}</li>"
            f"<li><strong>Patient ID:</strong> {sanitize_text(case.patient_internal_id)}</li>"
            f"<li><strong>Clinical Question:</strong> {sanitize_text(case.clinical_question)}</li>"
            "</ul>"
        )
        return await self.email.send(
            EmailMessage(
                sender=settings.email_from_notifications,
                to=[case.clinic_email],
                subject=f"Report Ready: {case.patient_name}",
                html=body,
            ),
            kind="report_ready",
        )

    async def _record(
        self,
        recipient_id: UUID | str,
        kind: str,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> None:
        async with use_session(self._session) as session:
            await session.execute(
                text("""
                INSERT INTO notifications (recipient_id, type, title, message, data, email_sent)
                VALUES (:recipient_id, :type, :title, :message, CAST(:data AS jsonb), TRUE)
                """),
                {
                    "recipient_id": str(recipient_id),
                    "type": kind,
                    "title": title,
                    "message": _TAG_RE.sub("", body),
                    "data": json.dumps(data),
                },
            )
