"""Case workflow: constants, models and the case manager."""

from .constants import (
    CaseStatus,
    FieldOfView,
    InvoiceStatus,
    Urgency,
    UserRole,
    format_case_title,
    format_field_of_view,
    format_status,
    format_urgency,
)
from .manager import CaseManager, get_case_manager
from .models import Case, CaseResponse, CreateCaseRequest

__all__ = [
    "Case",
    "CaseManager",
    "CaseResponse",
    "CaseStatus",
    "CreateCaseRequest",
    "FieldOfView",
    "InvoiceStatus",
    "Urgency",
    "UserRole",
    "format_case_title",
    "format_field_of_view",
    "format_status",
    "format_urgency",
    "get_case_manager",
]
