"""Unit tests for email delivery and case notifications."""

import base64
import json
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import httpx
import pytest

from dentarad.api import NotFoundError, ValidationError
from dentarad.cases.models import Case
from dentarad.notifications.email import EmailAttachment, EmailClient, EmailError, EmailMessage
from dentarad.notifications.service import (
    NotificationData,
    NotificationService,
    NotificationType,
    render_notification,
)
from fixtures.database import case_row, result_with_rows


def _message(**overrides) -> EmailMessage:
    fields = {
        "sender": "DentaRad <notifications@dentarad.com>",
        "to": ["clinic@example.com"],
        "subject": "Hello",
        "html": "<p>Hi</p>",
    }
    fields.update(overrides)
    return EmailMessage(**fields)


class TestEmailClient:
    @pytest.mark.asyncio
    async def test_send_posts_payload_with_attachments(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "email-1"})

        client = EmailClient(
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            api_key="re_test",
        )
        message = _message(attachments=[EmailAttachment(filename="invoice.pdf", content=b"%PDF")])

        assert await client.send(message, kind="invoice") == "email-1"
        assert seen[0].headers["Authorization"] == "Bearer re_test"
        payload = json.loads(seen[0].content)
        assert payload["from"].startswith("DentaRad")
        assert payload["attachments"][0]["content"] == base64.b64encode(b"%PDF").decode()

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        client = EmailClient(api_key="")
        with pytest.raises(EmailError, match="not configured"):
            await client.send(_message())

    @pytest.mark.asyncio
    async def test_rejected_email(self):
        client = EmailClient(
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(422, text="invalid to"))
            ),
            api_key="re_test",
        )
        with pytest.raises(EmailError, match="422"):
            await client.send(_message())

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        client = EmailClient(
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(fail)),
            api_key="re_test",
        )
        with pytest.raises(EmailError, match="Failed to reach Resend"):
            await client.send(_message())


class TestRenderNotification:
    def test_values_are_escaped(self):
        data = NotificationData(patient_name="<b>Jane</b>", clinic_name="A & B", clinical_question="x")
        subject, body = render_notification(NotificationType.NEW_CASE, data, "https://app.test")

        assert subject == "New Case Upload: <b>Jane</b>"
        assert "&lt;b&gt;Jane&lt;&#x2F;b&gt;" in body
        assert "A &amp; B" in body
        assert 'href="https://app.test/admin"' in body

    def test_urgent_alert(self):
        subject, body = render_notification(
            NotificationType.URGENT_CASE, NotificationData(patient_name="Jane"), "https://app.test"
        )
        assert "URGENT" in subject
        assert "immediate attention" in body

    def test_daily_summary_lists_counts(self):
        data = NotificationData(counts={"uploaded": 4, "report_ready": 1})
        subject, body = render_notification(NotificationType.DAILY_SUMMARY, data, "https://app.test")

        assert subject == "Daily Case Summary"
        assert "<li><strong>uploaded:</strong> 4</li>" in body


class TestNotificationService:
    @pytest.mark.asyncio
    async def test_sends_and_records(self, mock_db_session):
        profile = {"email": "reporter@dentarad.com", "notification_preferences": {}}
        mock_db_session.execute = AsyncMock(
            side_effect=[result_with_rows([profile]), result_with_rows([])]
        )
        email = MagicMock()
        email.send = AsyncMock(return_value="email-7")
        service = NotificationService(session=mock_db_session, email=email)

        result = await service.send_notification(
            "status_change", uuid4(), NotificationData(patient_name="Jane", old_status="uploaded", new_status="in_progress")
        )

        assert result.sent is True
        assert result.email_id == "email-7"
        sent = email.send.await_args.args[0]
        assert sent.to == ["reporter@dentarad.com"]
        insert_params = mock_db_session.execute.await_args_list[1].args[1]
        assert insert_params["type"] == "status_change"
        assert "<" not in insert_params["message"]

    @pytest.mark.asyncio
    async def test_respects_disabled_preference(self, mock_db_session):
        profile = {"email": "a@b.com", "notification_preferences": {"email_new_case": False}}
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([profile]))
        email = MagicMock()
        email.send = AsyncMock()

        result = await NotificationService(session=mock_db_session, email=email).send_notification(
            NotificationType.NEW_CASE, uuid4(), NotificationData()
        )

        assert result.sent is False
        email.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_type(self, mock_db_session):
        with pytest.raises(ValidationError):
            await NotificationService(session=mock_db_session).send_notification(
                "carrier_pigeon", uuid4(), NotificationData()
            )

    @pytest.mark.asyncio
    async def test_unknown_recipient(self, mock_db_session):
        with pytest.raises(NotFoundError):
            await NotificationService(session=mock_db_session, email=MagicMock()).send_notification(
                "new_case", uuid4(), NotificationData()
            )

    @pytest.mark.asyncio
    async def test_report_ready_skipped_without_clinic_email(self):
        email = MagicMock()
        email.send = AsyncMock()
        case = Case(**case_row(clinic_email=None))

        assert await NotificationService(email=email).send_report_ready(case) is None
        email.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_report_ready_links_to_viewer(self):
        email = MagicMock()
        email.send = AsyncMock(return_value="email-9")
        case = Case(**case_row())

        assert await NotificationService(email=email).send_report_ready(case) == "email-9"
        message = email.send.await_args.args[0]
        assert message.to == [case.clinic_email]
        assert f"/viewer/{case.id}" in message.html
