"""Enumerations and display labels shared across the case workflow."""

from enum import Enum


class CaseStatus(str, Enum):
    """Lifecycle of a case from upload to payment."""

    UPLOADED = "uploaded"
    IN_PROGRESS = "in_progress"
    REPORT_READY = "report_ready"
    AWAITING_PAYMENT = "awaiting_payment"


class Urgency(str, Enum):
    STANDARD = "standard"
    URGENT = "urgent"


class FieldOfView(str, Enum):
    """Scan field of view, which also drives pricing."""

    UP_TO_5X5 = "up_to_5x5"
    UP_TO_8X5 = "up_to_8x5"
    UP_TO_8X8 = "up_to_8x8"
    OVER_8X8 = "over_8x8"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"


class UserRole(str, Enum):
    ADMIN = "admin"
    CLINIC = "clinic"
    REPORTER = "reporter"


STATUS_LABELS: dict[str, str] = {
    CaseStatus.UPLOADED.value: "Uploaded",
    CaseStatus.IN_PROGRESS.value: "In Progress",
    CaseStatus.REPORT_READY.value: "Report Ready",
    CaseStatus.AWAITING_PAYMENT.value: "Awaiting Payment",
}

FOV_LABELS: dict[str, str] = {
    FieldOfView.UP_TO_5X5.value: "Up to 5x5",
    FieldOfView.UP_TO_8X5.value: "Up to 8x5",
    FieldOfView.UP_TO_8X8.value: "Up to 8x8",
    FieldOfView.OVER_8X8.value: "Over 8x8",
}

URGENCY_LABELS: dict[str, str] = {
    Urgency.STANDARD.value: "Standard",
    Urgency.URGENT.value: "Urgent",
}

# Allowed forward moves. report_ready -> in_progress re-opens a case for
# amendment.
STATUS_TRANSITIONS: dict[CaseStatus, set[CaseStatus]] = {
    CaseStatus.UPLOADED: {CaseStatus.IN_PROGRESS},
    CaseStatus.IN_PROGRESS: {CaseStatus.REPORT_READY},
    CaseStatus.REPORT_READY: {CaseStatus.AWAITING_PAYMENT, CaseStatus.IN_PROGRESS},
    CaseStatus.AWAITING_PAYMENT: set(),
}


def _value(item: Enum | str) -> str:
    return item.value if isinstance(item, Enum) else item


def format_status(status: CaseStatus | str) -> str:
    """Human-readable case status; unknown values are returned unchanged."""
    value = _value(status)
    return STATUS_LABELS.get(value, value)


def format_field_of_view(fov: FieldOfView | str) -> str:
    """Human-readable field of view, e.g. ``up_to_5x5`` -> ``Up to 5x5``."""
    value = _value(fov)
    return FOV_LABELS.get(value, value.replace("_", " "))


def format_urgency(urgency: Urgency | str) -> str:
    value = _value(urgency)
    return URGENCY_LABELS.get(value, value.capitalize())


def format_case_title(simple_id: int | None, patient_name: str | None) -> str:
    """Title shown on case cards: ``00012 - SMITH, JOHN``.

    Falls back to the bare patient name, or ``Unknown``.
    """
    if simple_id and patient_name:
        parts = patient_name.split(" ")
        last_name = parts[-1].upper()
        first_name = parts[0].upper()
        return f"{simple_id:05d} - {last_name}, {first_name}"
    return patient_name or "Unknown"


def validate_transition(current: CaseStatus | str, target: CaseStatus | str) -> bool:
    """Check a status change.

    Returns:
        False when the case is already in ``target`` (nothing to do),
        True when the move is allowed.

    Raises:
        ValueError: If the move is not allowed
    """
    current = CaseStatus(_value(current))
    target = CaseStatus(_value(target))
    if current == target:
        return False
    if target not in STATUS_TRANSITIONS[current]:
        raise ValueError(
            f"Cannot change case status from {current.value} to {target.value}"
        )
    return True
