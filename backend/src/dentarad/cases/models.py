"""Pydantic models for cases.

A case is one uploaded CBCT scan for one patient, owned by a clinic and
reported on by a radiologist.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .constants import (
    CaseStatus,
    FieldOfView,
    Urgency,
    format_case_title,
    format_field_of_view,
    format_status,
)


# =============================================================================
# Core Models
# =============================================================================


class Case(BaseModel):
    """A case row joined with its clinic's name and contact email."""

    id: UUID
    simple_id: int | None = None
    clinic_id: UUID
    clinic_name: str | None = None
    clinic_email: str | None = None

    patient_name: str
    patient_first_name: str | None = None
    patient_last_name: str | None = None
    patient_dob: date | None = None
    patient_internal_id: str | None = None

    clinical_question: str
    special_instructions: str | None = None
    reporter_notes: str | None = None

    status: CaseStatus = CaseStatus.UPLOADED
    urgency: Urgency = Urgency.STANDARD
    field_of_view: FieldOfView

    folder_name: str | None = None
    estimated_cost: Decimal | None = None
    file_path: str | None = None

    dropbox_scan_path: str | None = None
    dropbox_report_path: str | None = None
    synced_to_dropbox: bool = False
    synced_at: datetime | None = None
    zip_generation_status: str | None = None
    pregenerated_zip_path: str | None = None

    orthanc_study_id: str | None = None
    study_instance_uid: str | None = None

    billed: bool = False
    payment_received: bool = False

    upload_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = ConfigDict(use_enum_values=True)

    @property
    def title(self) -> str:
        return format_case_title(self.simple_id, self.patient_name)


class CreateCaseRequest(BaseModel):
    """Fields a clinic submits with a new scan."""

    patient_name: str = Field(..., min_length=1, max_length=200)
    patient_first_name: str | None = None
    patient_last_name: str | None = None
    patient_dob: date | None = None
    patient_internal_id: str | None = Field(default=None, max_length=50)
    clinical_question: str = Field(..., min_length=1, max_length=5000)
    special_instructions: str | None = Field(default=None, max_length=5000)
    urgency: Urgency = Urgency.STANDARD
    field_of_view: FieldOfView
    file_size: int | None = Field(default=None, ge=0, description="Scan size in bytes, checked before upload")

    model_config = ConfigDict(use_enum_values=True)


class CaseStatusUpdate(BaseModel):
    status: CaseStatus


class CaseNotesUpdate(BaseModel):
    reporter_notes: str = Field(default="", max_length=20000)


class BulkDeleteRequest(BaseModel):
    case_ids: list[UUID] = Field(..., min_length=1)


# =============================================================================
# API Response Models
# =============================================================================


class CaseResponse(BaseModel):
    """A case as returned by the API, with display labels."""

    id: UUID
    simple_id: int | None
    title: str
    clinic_id: UUID
    clinic_name: str | None
    patient_name: str
    patient_dob: date | None
    patient_internal_id: str | None
    clinical_question: str
    special_instructions: str | None
    reporter_notes: str | None
    status: str
    status_label: str
    urgency: str
    field_of_view: str
    field_of_view_label: str
    folder_name: str | None
    estimated_cost: Decimal | None
    upload_date: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_case(cls, case: Case) -> "CaseResponse":
        return cls(
            id=case.id,
            simple_id=case.simple_id,
            title=case.title,
            clinic_id=case.clinic_id,
            clinic_name=case.clinic_name,
            patient_name=case.patient_name,
            patient_dob=case.patient_dob,
            patient_internal_id=case.patient_internal_id,
            clinical_question=case.clinical_question,
            special_instructions=case.special_instructions,
            reporter_notes=case.reporter_notes,
            status=case.status,
            status_label=format_status(case.status),
            urgency=case.urgency,
            field_of_view=case.field_of_view,
            field_of_view_label=format_field_of_view(case.field_of_view),
            folder_name=case.folder_name,
            estimated_cost=case.estimated_cost,
            upload_date=case.upload_date,
            completed_at=case.completed_at,
        )


class CaseListResponse(BaseModel):
    items: list[CaseResponse]
    total: int
    limit: int
    offset: int


class IncomeStats(BaseModel):
    """Weekly and monthly income figures from the stats functions."""

    weekly: list[dict[str, Any]] = Field(default_factory=list)
    monthly: list[dict[str, Any]] = Field(default_factory=list)
