"""Audit trail for access to patient data.

Every view or download of a case, report or scan is recorded through the
``log_audit_event_secure`` database function. Audit failures never fail
the request that triggered them.
"""

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from fastapi import Request, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ..db import call_rpc, get_db_session, use_savepoint
from ..logging import get_logger

logger = get_logger(__name__)


class AuditAction(str, Enum):
    """Types of auditable actions."""

    VIEW_CASE = "view_case"
    VIEW_REPORT = "view_report"
    DOWNLOAD_DICOM = "download_dicom"
    DOWNLOAD_PDF = "download_pdf"
    CREATE_CASE = "create_case"
    CREATE_REPORT = "create_report"
    UPDATE_REPORT = "update_report"
    DELETE_CASE = "delete_case"
    LOGIN = "login"
    LOGOUT = "logout"
    MFA_SETUP = "mfa_setup"
    PASSWORD_CHANGE = "password_change"
    FAILED_LOGIN = "failed_login"
    UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"
    TEMPLATE_USED = "template_used"
    SIGN_REPORT = "sign_report"


class AuditResourceType(str, Enum):
    CASE = "case"
    REPORT = "report"
    DICOM = "dicom"
    PDF = "pdf"
    USER_ACCOUNT = "user_account"
    TEMPLATE = "cbct_report_template"


class AuditEntry:
    """Represents an audit log entry."""

    def __init__(
        self,
        action: AuditAction,
        user_id: str | None = None,
        resource_type: AuditResourceType | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ):
        self.id = uuid4()
        self.timestamp = datetime.now(timezone.utc)
        self.action = action
        self.user_id = user_id
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.details = details or {}
        self.ip_address = ip_address
        self.user_agent = user_agent

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "user_id": self.user_id,
            "resource_type": self.resource_type.value if self.resource_type else None,
            "resource_id": self.resource_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }


async def log_audit_entry(entry: AuditEntry, session: AsyncSession | None = None) -> None:
    """Store an audit entry.

    Args:
        entry: Audit entry to store
        session: Session to write in; a fresh one is used if omitted
    """
    try:
        async with use_savepoint(session) as db:
            await call_rpc(
                db,
                "log_audit_event_secure",
                p_action=entry.action.value,
                p_resource_type=entry.resource_type.value if entry.resource_type else None,
                p_resource_id=entry.resource_id,
                p_details=json.dumps(entry.details),
                p_ip_address=entry.ip_address,
                p_user_agent=entry.user_agent,
                p_user_id=entry.user_id,
            )
    except SQLAlchemyError as e:
        # Log but don't fail the request if audit logging fails
        logger.error(f"Audit log write failed for {entry.action.value}: {e}")

    logger.info("audit_event", extra={"event": "audit", **entry.to_dict()})


async def log_audit_event(
    action: AuditAction,
    resource_type: AuditResourceType | None = None,
    resource_id: str | None = None,
    details: dict[str, Any] | None = None,
    user_id: str | None = None,
    request: Request | None = None,
    session: AsyncSession | None = None,
) -> None:
    """Record an audit event, reading the client IP and agent from ``request``."""
    entry = AuditEntry(
        action=action,
        user_id=user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=get_client_ip(request) if request is not None else None,
        user_agent=request.headers.get("User-Agent") if request is not None else None,
    )
    await log_audit_entry(entry, session=session)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request headers.

    Args:
        request: FastAPI request

    Returns:
        Client IP address
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


_UUID = r"[0-9a-fA-F-]{36}"

# (method, path regex) -> (action, resource type). The first group is the resource id.
ROUTE_ACTIONS: list[tuple[str, re.Pattern, AuditAction, AuditResourceType]] = [
    ("GET", re.compile(rf"^/api/v1/cases/({_UUID})$"), AuditAction.VIEW_CASE, AuditResourceType.CASE),
    ("GET", re.compile(rf"^/api/v1/cases/({_UUID})/download$"), AuditAction.DOWNLOAD_DICOM, AuditResourceType.DICOM),
    ("GET", re.compile(rf"^/api/v1/cases/({_UUID})/report-link$"), AuditAction.DOWNLOAD_PDF, AuditResourceType.PDF),
    ("GET", re.compile(rf"^/api/v1/reports/case/({_UUID})$"), AuditAction.VIEW_REPORT, AuditResourceType.REPORT),
    ("POST", re.compile(r"^/api/v1/reports()$"), AuditAction.CREATE_REPORT, AuditResourceType.REPORT),
    ("PUT", re.compile(rf"^/api/v1/reports/({_UUID})$"), AuditAction.UPDATE_REPORT, AuditResourceType.REPORT),
    ("DELETE", re.compile(r"^/api/v1/cases()$"), AuditAction.DELETE_CASE, AuditResourceType.CASE),
]


def match_route_action(method: str, path: str) -> tuple[AuditAction, AuditResourceType, str | None] | None:
    """Match a request to an audit action.

    Returns:
        Tuple of (action, resource type, resource id) or None
    """
    for route_method, pattern, action, resource_type in ROUTE_ACTIONS:
        if method != route_method:
            continue
        match = pattern.match(path)
        if match:
            return action, resource_type, match.group(1) or None
    return None


class AuditMiddleware(BaseHTTPMiddleware):
    """Middleware for automatic audit logging of patient data access."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        matched = match_route_action(request.method, request.url.path)
        if matched is None:
            return await call_next(request)

        response = await call_next(request)
        action, resource_type, resource_id = matched

        if response.status_code in (401, 403):
            action = AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT
        elif response.status_code >= 400:
            return response

        await log_audit_entry(
            AuditEntry(
                action=action,
                user_id=getattr(request.state, "user_id", None),
                resource_type=resource_type,
                resource_id=resource_id,
                details={
                    "status_code": response.status_code,
                    "request_id": getattr(request.state, "request_id", None),
                    "query": dict(request.query_params),
                },
                ip_address=get_client_ip(request),
                user_agent=request.headers.get("User-Agent"),
            )
        )
        return response


async def get_audit_log(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    action: AuditAction | None = None,
    user_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """Query audit log entries, newest first."""
    async with get_db_session() as db:
        conditions = []
        params: dict[str, Any] = {"limit": limit, "offset": offset}

        if start_date:
            conditions.append("created_at >= :start_date")
            params["start_date"] = start_date
        if end_date:
            conditions.append("created_at <= :end_date")
            params["end_date"] = end_date
        if action:
            conditions.append("action = :action")
            params["action"] = action.value
        if user_id:
            conditions.append("user_id = :user_id")
            params["user_id"] = user_id

        where_clause = " AND ".join(conditions) if conditions else "1=1"

        result = await db.execute(
            text(f"""
                SELECT id, created_at, action, user_id, resource_type,
                       resource_id, details, ip_address, user_agent
                FROM audit_logs
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT :limit OFFSET :offset
            """),
            params,
        )
        return [
            {
                "id": str(row.id),
                "created_at": row.created_at.isoformat(),
                "action": row.action,
                "user_id": str(row.user_id) if row.user_id else None,
                "resource_type": row.resource_type,
                "resource_id": row.resource_id,
                "details": row.details or {},
                "ip_address": row.ip_address,
                "user_agent": row.user_agent,
            }
            for row in result.fetchall()
        ]
