"""Unit tests for report templates."""

from datetime import date
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from dentarad.reports.models import ReportTemplate
from dentarad.reports.templates import (
    TemplateService,
    calculate_age,
    render_template,
    replace_template_variables,
    suggest_category,
)
from fixtures.database import result_with_rows

TODAY = date(2026, 6, 15)


def _template(**overrides) -> ReportTemplate:
    fields = {
        "id": uuid4(),
        "name": "Implant assessment",
        "indication_category": "Implant Planning",
        "is_default": True,
        "imaging_technique_template": "CBCT, {fov}",
        "findings_template": "Bone at site for {patient_name} ({patient_age}y)",
        "impression_template": "Suitable",
    }
    fields.update(overrides)
    return ReportTemplate(**fields)


class TestVariables:
    def test_age_before_and_after_birthday(self):
        assert calculate_age(date(1990, 6, 15), TODAY) == "36"
        assert calculate_age(date(1990, 6, 16), TODAY) == "35"
        assert calculate_age(None, TODAY) == "[Age]"

    def test_replaces_known_placeholders(self):
        text = replace_template_variables(
            "{patient_name}, born {patient_dob}, seen {date} at {clinic_name}. FOV {fov}. {patient_id}",
            {
                "patient_name": "JANE DOE",
                "patient_dob": "1980-02-29",
                "clinic_name": "Bright Smiles",
                "field_of_view": "up_to_8x8",
                "patient_internal_id": "P-7",
            },
            today=TODAY,
        )
        assert text == (
            "JANE DOE, born 29/02/1980, seen 15/06/2026 at Bright Smiles. "
            "FOV Medium FOV - 8x8cm. P-7"
        )

    def test_missing_values_use_markers(self):
        text = replace_template_variables("{patient_name} {patient_dob} {fov} {unknown}", {}, today=TODAY)
        assert text == "[Patient Name] [DOB] [FOV] {unknown}"


class TestCategories:
    @pytest.mark.parametrize(
        "question,expected",
        [
            ("Pain in the jaw joint on opening", "TMJ"),
            ("Implant placement at 36", "Implant Planning"),
            ("Wisdom tooth extraction risk", "Third Molar"),
            ("Suspected sleep apnea", "Airway"),
            ("Radiolucent lesion near apex", "Pathology"),
            ("General review", None),
            (None, None),
        ],
    )
    def test_suggest_category(self, question, expected):
        assert suggest_category(question) == expected

    def test_first_keyword_wins(self):
        assert suggest_category("TMJ review before implant") == "TMJ"


class TestRenderTemplate:
    def test_sections_and_history(self):
        rendered = render_template(
            _template(),
            {"patient_name": "JANE DOE", "patient_dob": date(1990, 1, 1), "field_of_view": "up_to_5x5",
             "clinical_question": "Implant at 46"},
            today=TODAY,
        )
        assert rendered["clinical_history"] == "Implant at 46"
        content = rendered["report_content"]
        assert content.startswith("TECHNIQUE:\nCBCT, Small FOV - 5x5cm")
        assert "FINDINGS:\nBone at site for JANE DOE (36y)" in content
        assert "RECOMMENDATIONS" not in content


class TestTemplateService:
    @pytest.mark.asyncio
    async def test_fetch_filters_by_category(self, mock_db_session):
        row = _template().model_dump()
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        templates = await TemplateService(session=mock_db_session).fetch_templates("Implant Planning")

        assert templates[0].name == "Implant assessment"
        sql, params = mock_db_session.execute.await_args.args
        assert "indication_category = :category" in str(sql)
        assert params == {"category": "Implant Planning"}

    @pytest.mark.asyncio
    async def test_all_category_is_unfiltered(self, mock_db_session):
        await TemplateService(session=mock_db_session).fetch_templates("All")
        sql, params = mock_db_session.execute.await_args.args
        assert "WHERE" not in str(sql)

    @pytest.mark.asyncio
    async def test_categories_start_with_all(self, mock_db_session):
        mock_db_session.execute = AsyncMock(
            return_value=result_with_rows([{"indication_category": "Airway"}, {"indication_category": "TMJ"}])
        )
        assert await TemplateService(session=mock_db_session).get_categories() == ["All", "Airway", "TMJ"]

    @pytest.mark.asyncio
    async def test_no_suggestion_without_category(self, mock_db_session):
        assert await TemplateService(session=mock_db_session).suggest_template("General review") is None
        mock_db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_usage_tracking_failure_is_swallowed(self, mock_db_session):
        mock_db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))

        with patch("dentarad.reports.templates.log_audit_entry", new=AsyncMock()) as audit:
            await TemplateService(session=mock_db_session).track_usage(uuid4(), user_id="u1")

        audit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_usage_is_counted_and_audited(self, mock_db_session):
        template_id = uuid4()
        with patch("dentarad.reports.templates.log_audit_entry", new=AsyncMock()) as audit:
            await TemplateService(session=mock_db_session).track_usage(template_id, user_id="u1")

        first_sql = str(mock_db_session.execute.await_args_list[0].args[0])
        assert "increment_template_usage" in first_sql
        entry = audit.await_args.args[0]
        assert entry.resource_id == str(template_id)
