"""CLI commands for cases."""

import asyncio
import json
import sys
from uuid import UUID

import click

from ..cases.constants import STATUS_LABELS, CaseStatus, format_status
from ..cases.manager import get_case_manager


@click.group("cases")
def case_group() -> None:
    """Inspect and update cases."""
    pass


@case_group.command("list")
@click.option("--status", "-s", type=click.Choice([s.value for s in CaseStatus]), help="Filter by status")
@click.option("--clinic", "clinic_id", help="Restrict to one clinic id")
@click.option("--limit", "-l", default=20, type=int, help="Maximum results")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_cases(status: str | None, clinic_id: str | None, limit: int, as_json: bool) -> None:
    """List cases, newest upload first."""

    async def _list() -> None:
        manager = get_case_manager()
        cases, total = await manager.list_cases(
            clinic_id=clinic_id,
            status=CaseStatus(status) if status else None,
            limit=limit,
        )

        if as_json:
            data = {
                "items": [c.model_dump(mode="json") for c in cases],
                "total": total,
            }
            click.echo(json.dumps(data, indent=2))
        else:
            click.echo(f"Cases ({total} total):")
            click.echo("")
            for case in cases:
                click.echo(f"  {case.id}")
                click.echo(f"    Patient: {case.patient_name}")
                click.echo(f"    Clinic: {case.clinic_name or case.clinic_id}")
                click.echo(f"    Status: {format_status(case.status)}")
                click.echo(f"    Uploaded: {case.upload_date}")
                click.echo("")

    asyncio.run(_list())


@case_group.command("status")
@click.argument("case_id")
@click.argument("status", type=click.Choice([s.value for s in CaseStatus]))
def set_status(case_id: str, status: str) -> None:
    """Move a case to STATUS."""

    async def _update() -> None:
        manager = get_case_manager()
        try:
            case = await manager.update_status(UUID(case_id), CaseStatus(status))
        except ValueError as e:
            click.echo(str(e), err=True)
            sys.exit(1)
        click.echo(f"Case {case.id} is now {format_status(case.status)}")

    asyncio.run(_update())


@case_group.command("counts")
@click.option("--clinic", "clinic_id", help="Restrict to one clinic id")
def status_counts(clinic_id: str | None) -> None:
    """Number of cases in each status."""

    async def _counts() -> None:
        counts = await get_case_manager().dashboard_counts(clinic_id)
        for key, value in counts.items():
            click.echo(f"  {STATUS_LABELS.get(key, key)}: {value}")

    asyncio.run(_counts())
