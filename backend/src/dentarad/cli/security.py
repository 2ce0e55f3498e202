"""CLI commands for account security and access tokens."""

import asyncio
import json
import sys
from datetime import timedelta

import click

from ..api.audit import AuditAction, get_audit_log
from ..api.auth import User, create_access_token
from ..cases.constants import UserRole
from ..security.login_limiter import LoginRateLimiter
from ..security.password import validate_password_strength


@click.group("security")
def security_group() -> None:
    """Account security tools."""
    pass


@security_group.command("password-check")
@click.password_option(confirmation_prompt=False)
def password_check(password: str) -> None:
    """Score a password against the password policy."""
    result = validate_password_strength(password)
    click.echo(f"Strength: {result.label} ({result.score}/4)")
    for error in result.errors:
        click.echo(f"  Error: {error}")
    for tip in result.feedback:
        click.echo(f"  Tip: {tip}")
    if not result.valid:
        sys.exit(1)


@security_group.command("login-status")
@click.argument("email")
def login_status(email: str) -> None:
    """Show whether EMAIL is locked out after failed logins."""
    result = asyncio.run(LoginRateLimiter().check(email.strip().lower()))
    if result.allowed:
        click.echo(f"{email} may log in (recent failures: {result.attempts or 0})")
    else:
        click.echo(f"{email} is locked for {result.lockout_minutes} more minutes")


@security_group.command("audit")
@click.option("--action", "-a", type=click.Choice([a.value for a in AuditAction]), help="Filter by action")
@click.option("--user-id", help="Filter by user id")
@click.option("--limit", "-l", default=50, type=int, help="Maximum entries")
def audit_log(action: str | None, user_id: str | None, limit: int) -> None:
    """Print recent audit log entries as JSON lines."""
    entries = asyncio.run(
        get_audit_log(
            action=AuditAction(action) if action else None,
            user_id=user_id,
            limit=limit,
        )
    )
    for entry in entries:
        click.echo(json.dumps(entry, default=str))


@click.group("token")
def token_group() -> None:
    """Access tokens for local development and scripts."""
    pass


@token_group.command("create")
@click.option("--user-id", required=True, help="Subject of the token")
@click.option("--email", default="", help="Email claim")
@click.option("--role", type=click.Choice([r.value for r in UserRole]), default=UserRole.CLINIC.value)
@click.option("--clinic-id", help="Clinic the user belongs to")
@click.option("--hours", default=1, type=int, help="Lifetime in hours")
def create_token(user_id: str, email: str, role: str, clinic_id: str | None, hours: int) -> None:
    """Mint a signed access token."""
    if role == UserRole.CLINIC.value and not clinic_id:
        raise click.UsageError("--clinic-id is required for clinic users")
    user = User(id=user_id, email=email, role=UserRole(role), clinic_id=clinic_id)
    click.echo(create_access_token(user, expires_in=timedelta(hours=hours)))
