"""CLI commands for scan archives and the PACS."""

import asyncio
import json
import sys
from pathlib import Path

import click

from ..pacs.orthanc import get_orthanc_client
from ..uploads.validation import readable_file_size, validate_dicom_zip


@click.group("uploads")
def upload_group() -> None:
    """Scan archive tools."""
    pass


@upload_group.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def validate_archive(path: Path, as_json: bool) -> None:
    """Check that a ZIP archive is an acceptable DICOM upload."""
    result = validate_dicom_zip(path, path.name)

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        click.echo(f"{path.name} ({readable_file_size(path.stat().st_size)})")
        if result.valid:
            click.echo("  Valid")
            if result.stats:
                click.echo(f"  Files: {result.stats.total_files} ({result.stats.dicom_files} DICOM)")
                click.echo(f"  Compression ratio: {result.stats.compression_ratio:.2f}")
        else:
            click.echo(f"  Invalid: {result.error}")
        for warning in result.warnings:
            click.echo(f"  Warning: {warning}")

    if not result.valid:
        sys.exit(1)


@click.group("pacs")
def pacs_group() -> None:
    """Orthanc PACS tools."""
    pass


@pacs_group.command("check")
def check_pacs() -> None:
    """Check that Orthanc is reachable."""

    async def _check() -> dict:
        client = get_orthanc_client()
        try:
            return await client.check_connection()
        finally:
            await client.close()

    status = asyncio.run(_check())
    click.echo(json.dumps(status, indent=2, default=str))
    if not status.get("connected"):
        sys.exit(1)
