"""API tests for invoices and the Stripe webhook."""

from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import UUID, uuid4

import pytest

from dentarad.api.invoices import get_invoice_manager
from dentarad.billing.invoices import ReminderSummary
from dentarad.cases.constants import InvoiceStatus
from dentarad.config import get_settings
from dentarad.notifications.email import EmailError
from fixtures.auth import CLINIC_ID
from fixtures.database import result_with_rows


@pytest.fixture
def manager(app):
    manager = MagicMock()
    app.dependency_overrides[get_invoice_manager] = lambda: manager
    return manager


class TestInvoices:
    def test_clinic_sees_only_its_invoices(self, client, manager, clinic_headers):
        manager.fetch_invoices = AsyncMock(return_value=[])

        response = client.get(f"/api/v1/invoices?clinic_id={uuid4()}", headers=clinic_headers)

        assert response.status_code == 200
        assert manager.fetch_invoices.await_args.args == ("all", CLINIC_ID)

    def test_admin_filters_by_clinic(self, client, manager, admin_headers):
        manager.fetch_invoices = AsyncMock(return_value=[])
        clinic_id = uuid4()

        client.get(f"/api/v1/invoices?status=overdue&clinic_id={clinic_id}", headers=admin_headers)

        assert manager.fetch_invoices.await_args.args == ("overdue", clinic_id)

    def test_unknown_status_filter(self, client, manager, admin_headers):
        assert client.get("/api/v1/invoices?status=void", headers=admin_headers).status_code == 422

    def test_create_is_admin_only(self, client, manager, clinic_headers):
        body = {"clinic_id": CLINIC_ID, "case_ids": [str(uuid4())]}

        assert client.post("/api/v1/invoices", json=body, headers=clinic_headers).status_code == 403

    def test_status_update(self, client, manager, admin_headers):
        manager.update_invoice_status = AsyncMock()
        invoice_id = uuid4()

        response = client.patch(
            f"/api/v1/invoices/{invoice_id}/status", json={"status": "paid"}, headers=admin_headers
        )

        assert response.status_code == 204
        manager.update_invoice_status.assert_awaited_once_with(invoice_id, InvoiceStatus.PAID)

    def test_email_failure_is_bad_gateway(self, client, manager, admin_headers):
        manager.send_invoice_email = AsyncMock(side_effect=EmailError("Resend returned 500"))

        response = client.post(f"/api/v1/invoices/{uuid4()}/send", headers=admin_headers)

        assert response.status_code == 502
        assert response.json()["error"] == "Resend: Resend returned 500"

    def test_reminders_run_for_date(self, client, manager, admin_headers):
        manager.process_invoice_reminders = AsyncMock(
            return_value=ReminderSummary(processed_at="2026-04-01T09:00:00Z", reminders_sent=1)
        )

        response = client.post("/api/v1/invoices/reminders?today=2026-04-01", headers=admin_headers)

        assert response.json()["reminders_sent"] == 1
        manager.process_invoice_reminders.assert_awaited_once_with(date(2026, 4, 1))


class TestStripeWebhook:
    @pytest.fixture(autouse=True)
    def webhook_secret(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "stripe_webhook_secret", "whsec_test")

    def test_missing_signature(self, client):
        response = client.post("/api/v1/webhooks/stripe", content=b"{}")

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_payment_event(self, client, mock_db_session):
        clinic_id = uuid4()
        case_id = uuid4()
        mock_db_session.execute = AsyncMock(
            side_effect=[
                result_with_rows([{"id": clinic_id, "name": "Bright Smiles"}]),
                result_with_rows([{"id": case_id}]),
                result_with_rows([]),
            ]
        )
        event = {"type": "invoice.payment_succeeded", "data": {"object": {"id": "in_1", "customer": "cus_1"}}}

        with patch("dentarad.billing.stripe_webhook.stripe.Webhook.construct_event", return_value=event) as construct:
            response = client.post(
                "/api/v1/webhooks/stripe",
                content=b'{"id": "evt_1"}',
                headers={"Stripe-Signature": "t=1,v1=abc"},
            )

        assert response.json() == {"received": True, "clinic": "Bright Smiles", "cases_updated": 1}
        assert construct.call_args.args[:3] == (b'{"id": "evt_1"}', "t=1,v1=abc", "whsec_test")
        assert UUID(mock_db_session.execute.await_args_list[2].args[1]["case_ids"][0]) == case_id
