"""CLI entry points for DentaRad.

Provides command-line tools for:
- Case inspection and status changes
- Invoice housekeeping
- Scan archive validation and PACS checks
- Account security utilities
"""

import click

from .billing import invoice_group
from .cases import case_group
from .scans import pacs_group, upload_group
from .security import security_group, token_group


@click.group()
@click.version_option(version="1.0.0", prog_name="dentarad")
def main():
    """DentaRad - dental CBCT teleradiology.

    Command-line tools for operating the reporting service.
    """
    pass


main.add_command(case_group, name="cases")
main.add_command(invoice_group, name="invoices")
main.add_command(upload_group, name="uploads")
main.add_command(pacs_group, name="pacs")
main.add_command(security_group, name="security")
main.add_command(token_group, name="token")


if __name__ == "__main__":
    main()
