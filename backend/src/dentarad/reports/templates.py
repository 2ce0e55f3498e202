"""CBCT report templates.

Templates hold placeholder variables (``{patient_name}``, ``{fov}``, ...)
that are filled from the case when a reporter starts from a template.
"""

import logging
from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..api.audit import AuditAction, AuditEntry, AuditResourceType, log_audit_entry
from ..db import call_rpc, use_savepoint, use_session
from .models import ReportTemplate

logger = logging.getLogger(__name__)

TEMPLATE_FOV_LABELS = {
    "up_to_5x5": "Small FOV - 5x5cm",
    "up_to_8x5": "Medium FOV - 8x5cm",
    "up_to_8x8": "Medium FOV - 8x8cm",
    "over_8x8": "Large FOV - Over 8x8cm",
}

# Checked in order; the first keyword found in the question wins.
CATEGORY_KEYWORDS: list[tuple[str, str]] = [
    ("tmj", "TMJ"),
    ("temporomandibular", "TMJ"),
    ("jaw joint", "TMJ"),
    ("implant", "Implant Planning"),
    ("dental implant", "Implant Planning"),
    ("placement", "Implant Planning"),
    ("wisdom", "Third Molar"),
    ("third molar", "Third Molar"),
    ("extraction", "Third Molar"),
    ("airway", "Airway"),
    ("sleep apnea", "Airway"),
    ("osa", "Airway"),
    ("pathology", "Pathology"),
    ("lesion", "Pathology"),
    ("cyst", "Pathology"),
    ("tumor", "Pathology"),
    ("swelling", "Pathology"),
]


def calculate_age(dob: date | None, today: date | None = None) -> str:
    """Age in whole years, or ``[Age]`` when the birth date is unknown."""
    if dob is None:
        return "[Age]"
    today = today or date.today()
    age = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        age -= 1
    return str(age)


def _as_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def replace_template_variables(template: str, data: dict[str, Any], today: date | None = None) -> str:
    """Fill template placeholders from case data.

    Args:
        template: Template text
        data: Case fields (patient_name, patient_dob, clinic_name,
            clinical_question, field_of_view, patient_internal_id)
        today: Date used for ``{date}`` and the age

    Returns:
        Template text with every known placeholder replaced
    """
    today = today or date.today()
    dob = _as_date(data.get("patient_dob"))
    fov = data.get("field_of_view") or ""

    replacements = {
        "{patient_name}": data.get("patient_name") or "[Patient Name]",
        "{patient_dob}": dob.strftime("%d/%m/%Y") if dob else "[DOB]",
        "{patient_age}": calculate_age(dob, today),
        "{clinic_name}": data.get("clinic_name") or "[Clinic Name]",
        "{date}": today.strftime("%d/%m/%Y"),
        "{clinical_question}": data.get("clinical_question") or "[Clinical Question]",
        "{fov}": TEMPLATE_FOV_LABELS.get(fov, fov) or "[FOV]",
        "{patient_id}": data.get("patient_internal_id") or "[Patient ID]",
    }

    result = template
    for variable, value in replacements.items():
        result = result.replace(variable, str(value))
    return result


def suggest_category(clinical_question: str | None) -> str | None:
    """Map a clinical question to a template category by keyword."""
    if not clinical_question:
        return None
    question = clinical_question.lower()
    for keyword, category in CATEGORY_KEYWORDS:
        if keyword in question:
            return category
    return None


def render_template(template: ReportTemplate, data: dict[str, Any], today: date | None = None) -> dict[str, str]:
    """Fill every section of a template.

    Returns:
        ``clinical_history`` and ``report_content`` ready for the editor
    """
    parts = [
        ("TECHNIQUE", template.imaging_technique_template),
        ("FINDINGS", template.findings_template),
        ("IMPRESSION", template.impression_template),
        ("RECOMMENDATIONS", template.recommendations_template),
    ]
    content = "\n\n".join(
        f"{heading}:\n{replace_template_variables(body, data, today)}"
        for heading, body in parts
        if body
    )
    history = replace_template_variables(
        template.clinical_history_template or "{clinical_question}", data, today
    )
    return {"clinical_history": history, "report_content": content}


class TemplateService:
    def __init__(self, session: AsyncSession | None = None):
        self._session = session

    async def fetch_templates(self, category: str | None = None) -> list[ReportTemplate]:
        """Templates ordered by category, defaults first, then name."""
        query = "SELECT * FROM cbct_report_templates"
        params: dict[str, Any] = {}
        if category and category != "All":
            query += " WHERE indication_category = :category"
            params["category"] = category
        query += " ORDER BY indication_category ASC, is_default DESC, name ASC"

        async with use_session(self._session) as session:
            result = await session.execute(text(query), params)
            return [ReportTemplate(**dict(row._mapping)) for row in result.fetchall()]

    async def get_template(self, template_id: UUID | str) -> ReportTemplate | None:
        async with use_session(self._session) as session:
            result = await session.execute(
                text("SELECT * FROM cbct_report_templates WHERE id = :id"),
                {"id": str(template_id)},
            )
            row = result.fetchone()
            return ReportTemplate(**dict(row._mapping)) if row is not None else None

    async def get_categories(self) -> list[str]:
        async with use_session(self._session) as session:
            result = await session.execute(
                text("SELECT DISTINCT indication_category FROM cbct_report_templates ORDER BY indication_category")
            )
            return ["All", *[row.indication_category for row in result.fetchall()]]

    async def suggest_template(self, clinical_question: str | None) -> ReportTemplate | None:
        """The default template of the category the question points at."""
        category = suggest_category(clinical_question)
        if category is None:
            return None
        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                SELECT * FROM cbct_report_templates
                WHERE indication_category = :category AND is_default = TRUE
                LIMIT 1
                """),
                {"category": category},
            )
            row = result.fetchone()
            return ReportTemplate(**dict(row._mapping)) if row is not None else None

    async def track_usage(
        self,
        template_id: UUID | str,
        user_id: str | None = None,
        case_id: UUID | str | None = None,
    ) -> None:
        """Count a use of a template. Failures are logged, not raised."""
        try:
            async with use_savepoint(self._session) as session:
                await call_rpc(session, "increment_template_usage", template_id=str(template_id))
                await session.execute(
                    text("""
                    INSERT INTO template_usage (template_id, user_id, case_id)
                    VALUES (:template_id, :user_id, :case_id)
                    """),
                    {
                        "template_id": str(template_id),
                        "user_id": user_id,
                        "case_id": str(case_id) if case_id else None,
                    },
                )
        except SQLAlchemyError as e:
            logger.warning(f"Template usage tracking failed for {template_id}: {e}")
            return

        await log_audit_entry(
            AuditEntry(
                action=AuditAction.TEMPLATE_USED,
                user_id=user_id,
                resource_type=AuditResourceType.TEMPLATE,
                resource_id=str(template_id),
                details={"case_id": str(case_id) if case_id else None},
            ),
            session=self._session,
        )
