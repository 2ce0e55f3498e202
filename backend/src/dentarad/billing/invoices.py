"""Invoices for clinics: creation, PDF output, emailing and reminders."""

import asyncio
import json
import random
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..api import NotFoundError, ValidationError
from ..cases.constants import CaseStatus, InvoiceStatus, format_field_of_view, format_status
from ..config import get_settings
from ..db import call_rpc, use_session
from ..logging import get_context_logger
from ..notifications.email import EmailAttachment, EmailClient, EmailError, EmailMessage, get_email_client
from ..reports.pdf import DentaRadPDF, latin1
from ..storage import StorageClient, get_storage

logger = get_context_logger(__name__)

DEFAULT_DUE_DAYS = 30
REMINDER_DAYS_BEFORE_DUE = 7
CURRENCY = "GBP"

INVOICE_SELECT = """
    SELECT i.*, cl.name AS clinic_name, cl.contact_email AS clinic_email
    FROM invoices i
    LEFT JOIN clinics cl ON cl.id = i.clinic_id
"""


class LineItem(BaseModel):
    case_id: UUID
    patient_name: str
    field_of_view: str
    description: str
    amount: Decimal


class Invoice(BaseModel):
    id: UUID
    invoice_number: str
    clinic_id: UUID
    clinic_name: str | None = None
    clinic_email: str | None = None
    case_ids: list[UUID] = Field(default_factory=list)
    amount: Decimal
    currency: str = CURRENCY
    line_items: list[LineItem] = Field(default_factory=list)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    due_date: date
    pdf_storage_path: str | None = None
    stripe_invoice_id: str | None = None
    sent_at: datetime | None = None
    paid_at: datetime | None = None
    status_updated_at: datetime | None = None
    created_at: datetime | None = None


class CreateInvoiceRequest(BaseModel):
    clinic_id: UUID
    case_ids: list[UUID] = Field(..., min_length=1)
    due_days: int = Field(default=DEFAULT_DUE_DAYS, ge=0, le=365)


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus


class ReminderSummary(BaseModel):
    processed_at: datetime
    overdue_updated: int = 0
    reminders_sent: int = 0
    overdue_notices_sent: int = 0


def generate_invoice_number(today: date | None = None) -> str:
    """``INV-YYYYMMDD-NNNN`` with a random four digit suffix."""
    today = today or date.today()
    return f"INV-{today:%Y%m%d}-{random.randint(0, 9999):04d}"


def format_long_date(value: date) -> str:
    """en-GB long date, e.g. ``5 March 2025``."""
    return f"{value.day} {value:%B %Y}"


def fill_email_template(template: str, variables: dict[str, str]) -> str:
    for key, value in variables.items():
        template = template.replace("{{" + key + "}}", value)
    return template


def _row_to_invoice(row: Any) -> Invoice:
    data = dict(row._mapping)
    if isinstance(data.get("line_items"), str):
        data["line_items"] = json.loads(data["line_items"])
    data["case_ids"] = data.get("case_ids") or []
    data["line_items"] = data.get("line_items") or []
    return Invoice(**data)


def render_invoice_pdf(invoice: Invoice, clinic_address: str | None = None) -> bytes:
    """Render an invoice with one row per reported case."""
    pdf = DentaRadPDF(title=f"Invoice {invoice.invoice_number}")
    pdf.alias_nb_pages()
    pdf.add_page()

    pdf.set_font("Helvetica", "B", 16)
    pdf.cell(0, 10, "INVOICE", align="C", new_x="LMARGIN", new_y="NEXT")
    pdf.key_value("Invoice number:", invoice.invoice_number)
    issued = (invoice.created_at or datetime.now(timezone.utc)).date()
    pdf.key_value("Issued:", format_long_date(issued))
    pdf.key_value("Due:", format_long_date(invoice.due_date))
    pdf.key_value("Bill to:", invoice.clinic_name or "")
    if clinic_address:
        pdf.key_value("Address:", clinic_address)
    pdf.ln(4)

    widths = (70, 60, 40)
    pdf.set_font("Helvetica", "B", 10)
    pdf.set_fill_color(230, 240, 250)
    for width, heading in zip(widths, ("Patient", "Field of view", "Amount")):
        pdf.cell(width, 8, heading, border=1, fill=True, align="R" if heading == "Amount" else "L")
    pdf.ln()

    pdf.set_font("Helvetica", size=10)
    for item in invoice.line_items:
        pdf.cell(widths[0], 7, latin1(item.patient_name), border=1)
        pdf.cell(widths[1], 7, latin1(format_field_of_view(item.field_of_view)), border=1)
        pdf.cell(widths[2], 7, latin1(f"£{item.amount:.2f}"), border=1, align="R")
        pdf.ln()

    pdf.set_font("Helvetica", "B", 11)
    pdf.cell(widths[0] + widths[1], 8, "Total", border=1, align="R")
    pdf.cell(widths[2], 8, latin1(f"£{invoice.amount:.2f}"), border=1, align="R")
    pdf.ln(14)

    pdf.set_font("Helvetica", size=9)
    pdf.multi_cell(
        0,
        5,
        f"Payment is due within {(invoice.due_date - issued).days} days. "
        f"Please quote {invoice.invoice_number} with your payment.",
        new_x="LMARGIN",
        new_y="NEXT",
    )
    return bytes(pdf.output())


class InvoiceManager:
    """Creates and tracks clinic invoices."""

    def __init__(
        self,
        session: AsyncSession | None = None,
        storage: StorageClient | None = None,
        email: EmailClient | None = None,
    ):
        self._session = session
        self._storage = storage
        self._email = email

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = get_storage()
        return self._storage

    @property
    def email(self) -> EmailClient:
        if self._email is None:
            self._email = get_email_client()
        return self._email

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_unbilled_reports(
        self,
        clinic_id: UUID | str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[dict[str, Any]]:
        """Completed cases not yet on an invoice."""
        async with use_session(self._session) as session:
            rows = await call_rpc(session, "get_unbilled_reports", p_start_date=start, p_end_date=end)
        if clinic_id is not None:
            rows = [row for row in rows if str(row.get("clinic_id")) == str(clinic_id)]
        return rows

    async def fetch_invoices(self, status: str = "all", clinic_id: UUID | str | None = None) -> list[Invoice]:
        """Invoices newest first. ``all`` disables the status filter."""
        query = INVOICE_SELECT + " WHERE 1=1"
        params: dict[str, Any] = {}
        if status and status != "all":
            query += " AND i.status = :status"
            params["status"] = InvoiceStatus(status).value
        if clinic_id:
            query += " AND i.clinic_id = :clinic_id"
            params["clinic_id"] = str(clinic_id)
        query += " ORDER BY i.created_at DESC"

        async with use_session(self._session) as session:
            result = await session.execute(text(query), params)
            return [_row_to_invoice(row) for row in result.fetchall()]

    async def get_invoice(self, invoice_id: UUID | str) -> Invoice:
        """Raises NotFoundError for an unknown invoice."""
        async with use_session(self._session) as session:
            result = await session.execute(
                text(INVOICE_SELECT + " WHERE i.id = :id"),
                {"id": str(invoice_id)},
            )
            row = result.fetchone()
        if row is None:
            raise NotFoundError("Invoice", invoice_id)
        return _row_to_invoice(row)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create_invoice(
        self,
        clinic_id: UUID | str,
        case_ids: list[UUID | str],
        due_days: int = DEFAULT_DUE_DAYS,
        today: date | None = None,
    ) -> Invoice:
        """Invoice a clinic for a set of reported cases.

        Each case is priced at its field of view's current rate. The cases
        are marked billed and moved to ``awaiting_payment``, and the PDF is
        stored as ``{invoice_number}.pdf``.

        Raises:
            ValidationError: If a case is missing, belongs to another clinic,
                is already billed, has no report yet or has no price
        """
        ids = [str(case_id) for case_id in case_ids]
        if not ids:
            raise ValidationError("No cases selected")
        today = today or date.today()
        number = generate_invoice_number(today)

        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                SELECT c.id, c.clinic_id, c.patient_name, c.field_of_view, c.status, c.billed,
                       (SELECT p.price FROM pricing_rules p
                        WHERE p.field_of_view = c.field_of_view AND p.effective_to IS NULL
                        ORDER BY p.effective_from DESC LIMIT 1) AS price
                FROM cases c
                WHERE c.id = ANY(:ids)
                """),
                {"ids": ids},
            )
            rows = result.fetchall()
            if len(rows) != len(set(ids)):
                raise ValidationError("One or more cases were not found")

            items = []
            for row in rows:
                if str(row.clinic_id) != str(clinic_id):
                    raise ValidationError(f"Case {row.id} belongs to another clinic")
                if row.billed:
                    raise ValidationError(f"Case {row.id} has already been billed")
                if row.status != CaseStatus.REPORT_READY.value:
                    raise ValidationError(
                        f"Case {row.id} cannot be invoiced while it is {format_status(row.status)}"
                    )
                if row.price is None:
                    raise ValidationError(f"No price set for {format_field_of_view(row.field_of_view)}")
                items.append(
                    LineItem(
                        case_id=row.id,
                        patient_name=row.patient_name,
                        field_of_view=row.field_of_view,
                        description=f"CBCT report - {format_field_of_view(row.field_of_view)}",
                        amount=Decimal(str(row.price)),
                    )
                )
            total = sum((item.amount for item in items), Decimal("0"))

            result = await session.execute(
                text("""
                INSERT INTO invoices (
                    invoice_number, clinic_id, case_ids, amount, currency,
                    line_items, status, due_date, pdf_storage_path
                ) VALUES (
                    :number, :clinic_id, CAST(:case_ids AS uuid[]), :amount, :currency,
                    CAST(:line_items AS jsonb), :status, :due_date, :pdf_path
                )
                RETURNING id
                """),
                {
                    "number": number,
                    "clinic_id": str(clinic_id),
                    "case_ids": ids,
                    "amount": total,
                    "currency": CURRENCY,
                    "line_items": json.dumps([item.model_dump(mode="json") for item in items]),
                    "status": InvoiceStatus.DRAFT.value,
                    "due_date": today + timedelta(days=due_days),
                    "pdf_path": f"{number}.pdf",
                },
            )
            invoice_id = result.scalar_one()

            await session.execute(
                text("""
                UPDATE cases
                SET billed = TRUE, status = :status, updated_at = :now
                WHERE id = ANY(:ids)
                """),
                {"ids": ids, "status": CaseStatus.AWAITING_PAYMENT.value, "now": datetime.now(timezone.utc)},
            )

            result = await session.execute(
                text(INVOICE_SELECT + " WHERE i.id = :id"),
                {"id": str(invoice_id)},
            )
            invoice = _row_to_invoice(result.fetchone())

        pdf = await asyncio.to_thread(render_invoice_pdf, invoice)
        await asyncio.to_thread(
            self.storage.upload_file,
            self.storage.invoices_bucket,
            invoice.pdf_storage_path,
            pdf,
            "application/pdf",
        )
        logger.info(f"Created invoice {number} for clinic {clinic_id} ({len(items)} cases, {total})")
        return invoice

    async def update_invoice_status(self, invoice_id: UUID | str, status: InvoiceStatus | str) -> None:
        status = InvoiceStatus(status)
        assignments = "status = :status, status_updated_at = :now"
        if status == InvoiceStatus.SENT:
            assignments += ", sent_at = :now"
        elif status == InvoiceStatus.PAID:
            assignments += ", paid_at = :now"

        async with use_session(self._session) as session:
            result = await session.execute(
                text(f"UPDATE invoices SET {assignments} WHERE id = :id RETURNING id"),
                {"id": str(invoice_id), "status": status.value, "now": datetime.now(timezone.utc)},
            )
            if result.fetchone() is None:
                raise NotFoundError("Invoice", invoice_id)

    async def delete_invoice(self, invoice_id: UUID | str) -> None:
        """Delete an invoice and its PDF. A storage failure does not stop the delete."""
        invoice = await self.get_invoice(invoice_id)
        if invoice.pdf_storage_path:
            try:
                await asyncio.to_thread(
                    self.storage.delete_file, self.storage.invoices_bucket, invoice.pdf_storage_path
                )
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"Could not delete PDF for invoice {invoice.invoice_number}: {e}")

        async with use_session(self._session) as session:
            await session.execute(text("DELETE FROM invoices WHERE id = :id"), {"id": str(invoice_id)})

    # =========================================================================
    # Email
    # =========================================================================

    async def _email_template(self, key: str) -> tuple[str, str]:
        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                SELECT subject, html_content FROM email_templates
                WHERE template_key = :key AND is_active = TRUE
                """),
                {"key": key},
            )
            row = result.fetchone()
        if row is None:
            raise NotFoundError("Email template", key)
        return row.subject, row.html_content

    @staticmethod
    def _variables(invoice: Invoice, **extra: Any) -> dict[str, str]:
        variables = {
            "invoice_number": invoice.invoice_number,
            "clinic_name": invoice.clinic_name or "",
            "amount": f"{invoice.amount:.2f}",
            "due_date": format_long_date(invoice.due_date),
        }
        variables.update({key: "" if value is None else str(value) for key, value in extra.items()})
        return variables

    async def send_invoice_email(self, invoice_id: UUID | str) -> str | None:
        """Email an invoice PDF to its clinic and mark the invoice sent.

        Raises:
            NotFoundError: If the invoice or the email template is missing
            ValidationError: If the clinic has no contact email
            EmailError: If the email cannot be sent
        """
        invoice = await self.get_invoice(invoice_id)
        if not invoice.clinic_email:
            raise ValidationError("Clinic has no contact email")

        subject, html = await self._email_template("invoice_email")
        variables = self._variables(invoice)
        pdf_path = invoice.pdf_storage_path or f"{invoice.invoice_number}.pdf"
        pdf = await asyncio.to_thread(self.storage.download_file, self.storage.invoices_bucket, pdf_path)

        email_id = await self.email.send(
            EmailMessage(
                sender=get_settings().email_from_invoices,
                to=[invoice.clinic_email],
                subject=fill_email_template(subject, variables),
                html=fill_email_template(html, variables),
                attachments=[EmailAttachment(filename=f"Invoice-{invoice.invoice_number}.pdf", content=pdf)],
            ),
            kind="invoice",
        )
        await self.update_invoice_status(invoice_id, InvoiceStatus.SENT)
        return email_id

    async def send_reminder(self, invoice: Invoice, reminder_type: str, days: int) -> str | None:
        """Send a ``pre_due`` or ``overdue`` reminder and log it as a notification."""
        key = "reminder_pre_due" if reminder_type == "pre_due" else "reminder_overdue"
        subject, html = await self._email_template(key)
        extra = {"days_until_due": days} if reminder_type == "pre_due" else {"days_overdue": days}
        variables = self._variables(invoice, **extra)
        subject = fill_email_template(subject, variables)

        email_id = await self.email.send(
            EmailMessage(
                sender=get_settings().email_from_invoices,
                to=[invoice.clinic_email],
                subject=subject,
                html=fill_email_template(html, variables),
            ),
            kind=f"invoice_{reminder_type}",
        )

        async with use_session(self._session) as session:
            await session.execute(
                text("""
                INSERT INTO notifications (recipient_id, type, title, message, data, email_sent)
                VALUES (NULL, :type, :title, :message, CAST(:data AS jsonb), TRUE)
                """),
                {
                    "type": "invoice_reminder" if reminder_type == "pre_due" else "invoice_overdue",
                    "title": subject,
                    "message": f"Reminder email sent to {invoice.clinic_email}",
                    "data": json.dumps(
                        {
                            "invoice_id": str(invoice.id),
                            "invoice_number": invoice.invoice_number,
                            "amount": f"{invoice.amount:.2f}",
                            "due_date": invoice.due_date.isoformat(),
                            **extra,
                        }
                    ),
                },
            )
        return email_id

    async def process_invoice_reminders(self, today: date | None = None) -> ReminderSummary:
        """Daily invoice housekeeping.

        Open invoices past their due date become ``overdue``. Clinics get a
        reminder seven days before an invoice is due and a notice when one
        turns overdue. A failed email is logged and the run continues.
        """
        today = today or date.today()
        now = datetime.now(timezone.utc)
        open_statuses = [InvoiceStatus.DRAFT.value, InvoiceStatus.SENT.value]

        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                UPDATE invoices
                SET status = :overdue, status_updated_at = :now
                WHERE due_date < :today AND status = ANY(:open)
                RETURNING id
                """),
                {"overdue": InvoiceStatus.OVERDUE.value, "now": now, "today": today, "open": open_statuses},
            )
            newly_overdue = [row.id for row in result.fetchall()]

            result = await session.execute(
                text(INVOICE_SELECT + " WHERE i.due_date = :due AND i.status = ANY(:open)"),
                {"due": today + timedelta(days=REMINDER_DAYS_BEFORE_DUE), "open": open_statuses},
            )
            upcoming = [_row_to_invoice(row) for row in result.fetchall()]

            overdue: list[Invoice] = []
            if newly_overdue:
                result = await session.execute(
                    text(INVOICE_SELECT + " WHERE i.id = ANY(:ids)"),
                    {"ids": [str(invoice_id) for invoice_id in newly_overdue]},
                )
                overdue = [_row_to_invoice(row) for row in result.fetchall()]

        summary = ReminderSummary(processed_at=now, overdue_updated=len(newly_overdue))
        for invoice in upcoming:
            if await self._try_reminder(invoice, "pre_due", REMINDER_DAYS_BEFORE_DUE):
                summary.reminders_sent += 1
        for invoice in overdue:
            if await self._try_reminder(invoice, "overdue", (today - invoice.due_date).days):
                summary.overdue_notices_sent += 1

        logger.info(
            f"Invoice reminders: {summary.overdue_updated} overdue, "
            f"{summary.reminders_sent} reminders, {summary.overdue_notices_sent} overdue notices"
        )
        return summary

    async def _try_reminder(self, invoice: Invoice, reminder_type: str, days: int) -> bool:
        if not invoice.clinic_email:
            logger.warning(f"Invoice {invoice.invoice_number} has no clinic email, {reminder_type} reminder skipped")
            return False
        try:
            await self.send_reminder(invoice, reminder_type, days)
        except (EmailError, NotFoundError) as e:
            logger.error(f"{reminder_type} reminder for {invoice.invoice_number} failed: {e}")
            return False
        return True
