"""Stripe payment webhooks."""

from datetime import datetime, timezone
from typing import Any

import stripe
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..api import APIError, ValidationError
from ..cases.constants import InvoiceStatus
from ..config import get_settings
from ..db import use_session
from ..logging import get_context_logger, log_payment_event

logger = get_context_logger(__name__)

PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


def construct_event(payload: bytes, signature: str | None, secret: str | None = None) -> Any:
    """Verify a webhook signature and parse the event.

    Raises:
        ValidationError: If the signature is missing or does not match
    """
    secret = secret if secret is not None else get_settings().stripe_webhook_secret
    if not secret:
        raise APIError(500, "STRIPE_NOT_CONFIGURED", "Stripe credentials not configured")
    if not signature:
        raise ValidationError("Missing signature")
    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise ValidationError(f"Webhook signature verification failed: {e}")


async def handle_stripe_webhook(
    payload: bytes,
    signature: str | None,
    session: AsyncSession | None = None,
    secret: str | None = None,
) -> dict[str, Any]:
    """Process a Stripe webhook.

    A paid Stripe invoice settles every billed, unpaid case of the clinic
    whose ``stripe_customer_id`` matches the invoice customer.
    """
    event = construct_event(payload, signature, secret)
    if event["type"] != PAYMENT_SUCCEEDED:
        return {"received": True}

    stripe_invoice = event["data"]["object"]
    customer = stripe_invoice.get("customer")
    stripe_invoice_id = stripe_invoice.get("id")
    now = datetime.now(timezone.utc)

    async with use_session(session) as db:
        result = await db.execute(
            text("SELECT id, name FROM clinics WHERE stripe_customer_id = :customer"),
            {"customer": customer},
        )
        clinic = result.fetchone()
        if clinic is None:
            logger.warning(f"Stripe payment for unknown customer {customer}")
            return {"received": True, "error": "Clinic not found"}

        result = await db.execute(
            text("""
            UPDATE cases
            SET payment_received = TRUE,
                payment_received_at = :now,
                stripe_invoice_id = :stripe_invoice_id
            WHERE clinic_id = :clinic_id AND billed = TRUE AND payment_received = FALSE
            RETURNING id
            """),
            {"now": now, "stripe_invoice_id": stripe_invoice_id, "clinic_id": str(clinic.id)},
        )
        updated = [str(row.id) for row in result.fetchall()]

        await db.execute(
            text("""
            UPDATE invoices
            SET status = :paid, paid_at = :now, status_updated_at = :now,
                stripe_invoice_id = :stripe_invoice_id
            WHERE clinic_id = :clinic_id
              AND status <> :paid
              AND case_ids && CAST(:case_ids AS uuid[])
            """),
            {
                "paid": InvoiceStatus.PAID.value,
                "now": now,
                "stripe_invoice_id": stripe_invoice_id,
                "clinic_id": str(clinic.id),
                "case_ids": updated,
            },
        )

    log_payment_event(PAYMENT_SUCCEEDED, str(clinic.id), len(updated), stripe_invoice_id)
    return {"received": True, "clinic": clinic.name, "cases_updated": len(updated)}
