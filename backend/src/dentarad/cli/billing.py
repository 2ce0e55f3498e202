"""CLI commands for invoices."""

import asyncio
import json
from datetime import date, datetime

import click

from ..billing.invoices import InvoiceManager, generate_invoice_number


@click.group("invoices")
def invoice_group() -> None:
    """Invoice housekeeping."""
    pass


@invoice_group.command("reminders")
@click.option("--date", "run_date", help="Run as if today were this date (YYYY-MM-DD)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def process_reminders(run_date: str | None, as_json: bool) -> None:
    """Mark overdue invoices and email payment reminders."""
    today = datetime.strptime(run_date, "%Y-%m-%d").date() if run_date else None

    async def _run() -> None:
        manager = InvoiceManager()
        try:
            summary = await manager.process_invoice_reminders(today)
        finally:
            await manager.email.close()

        if as_json:
            click.echo(json.dumps(summary.model_dump(mode="json"), indent=2))
        else:
            click.echo(f"Overdue invoices updated: {summary.overdue_updated}")
            click.echo(f"Reminders sent: {summary.reminders_sent}")
            click.echo(f"Overdue notices sent: {summary.overdue_notices_sent}")

    asyncio.run(_run())


@invoice_group.command("number")
@click.option("--date", "on_date", help="Date to number for (YYYY-MM-DD)")
def invoice_number(on_date: str | None) -> None:
    """Print a fresh invoice number."""
    today = datetime.strptime(on_date, "%Y-%m-%d").date() if on_date else date.today()
    click.echo(generate_invoice_number(today))
