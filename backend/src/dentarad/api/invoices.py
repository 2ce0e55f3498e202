"""API endpoints for invoices. Clinics may list their own; everything else is admin only."""

from datetime import date
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..billing.invoices import (
    CreateInvoiceRequest,
    Invoice,
    InvoiceManager,
    InvoiceStatusUpdate,
    ReminderSummary,
)
from ..db import get_db
from ..notifications.email import EmailError
from . import ExternalServiceError
from .auth import AdminUser, CurrentUser

router = APIRouter(prefix="/invoices", tags=["invoices"])


def get_invoice_manager(session: AsyncSession = Depends(get_db)) -> InvoiceManager:
    return InvoiceManager(session=session)


@router.get("", response_model=list[Invoice])
async def list_invoices(
    user: CurrentUser,
    status: str = Query(default="all", pattern="^(all|draft|sent|paid|overdue)$"),
    clinic_id: UUID | None = None,
    manager: InvoiceManager = Depends(get_invoice_manager),
) -> list[Invoice]:
    """Invoices newest first. Clinic users only see their own."""
    if not user.is_admin():
        clinic_id = user.clinic_id
    return await manager.fetch_invoices(status, clinic_id)


@router.get("/unbilled")
async def unbilled_reports(
    user: AdminUser,
    clinic_id: UUID | None = None,
    start: date | None = None,
    end: date | None = None,
    manager: InvoiceManager = Depends(get_invoice_manager),
) -> list[dict[str, Any]]:
    return await manager.get_unbilled_reports(clinic_id, start, end)


@router.post("", response_model=Invoice, status_code=201)
async def create_invoice(
    body: CreateInvoiceRequest,
    user: AdminUser,
    manager: InvoiceManager = Depends(get_invoice_manager),
) -> Invoice:
    return await manager.create_invoice(body.clinic_id, body.case_ids, body.due_days)


@router.patch("/{invoice_id}/status", status_code=204)
async def update_invoice_status(
    invoice_id: UUID,
    body: InvoiceStatusUpdate,
    user: AdminUser,
    manager: InvoiceManager = Depends(get_invoice_manager),
) -> None:
    await manager.update_invoice_status(invoice_id, body.status)


@router.delete("/{invoice_id}", status_code=204)
async def delete_invoice(
    invoice_id: UUID,
    user: AdminUser,
    manager: InvoiceManager = Depends(get_invoice_manager),
) -> None:
    await manager.delete_invoice(invoice_id)


@router.post("/{invoice_id}/send")
async def send_invoice(
    invoice_id: UUID,
    user: AdminUser,
    manager: InvoiceManager = Depends(get_invoice_manager),
) -> dict:
    """Email the invoice PDF to the clinic."""
    try:
        email_id = await manager.send_invoice_email(invoice_id)
    except EmailError as e:
        raise ExternalServiceError("Resend", str(e))
    return {"success": True, "email_id": email_id}


@router.post("/reminders", response_model=ReminderSummary)
async def process_reminders(
    user: AdminUser,
    today: date | None = None,
    manager: InvoiceManager = Depends(get_invoice_manager),
) -> ReminderSummary:
    """Run the daily overdue and reminder pass now."""
    return await manager.process_invoice_reminders(today)
