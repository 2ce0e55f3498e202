"""Unit tests for report PDF rendering."""

from datetime import datetime, timezone
from uuid import uuid4

from dentarad.cases.models import Case
from dentarad.reports.models import Report
from dentarad.reports.pdf import html_to_text, latin1, parse_report_sections, render_report_pdf
from fixtures.database import case_row


def _report(**overrides) -> Report:
    fields = {
        "id": uuid4(),
        "case_id": uuid4(),
        "clinical_history": "<p>Implant planning</p>",
        "report_content": "<p>FINDINGS: Adequate bone height</p><p>IMPRESSION:</p><p>Suitable for implant</p>",
    }
    fields.update(overrides)
    return Report(**fields)


class TestHtmlToText:
    def test_blocks_and_breaks(self):
        assert html_to_text("<p>Hello</p><p>World<br>again</p>") == "Hello\n\nWorld\nagain"

    def test_empty(self):
        assert html_to_text(None) == ""
        assert html_to_text("") == ""


class TestSections:
    def test_split_on_headings(self):
        sections = parse_report_sections("Intro line\nFINDINGS: Normal\nimpression:\nNo pathology")
        assert sections == {"FINDINGS": "Intro line\nNormal", "IMPRESSION": "No pathology"}

    def test_empty_sections_are_dropped(self):
        assert parse_report_sections("TECHNIQUE:\n\nFINDINGS: ok") == {"FINDINGS": "ok"}


def test_latin1_replaces_unsupported_characters():
    assert latin1("Zoë ✓") == "Zoë ?"


class TestRenderPdf:
    def test_unsigned_report(self):
        pdf = render_report_pdf(Case(**case_row()), _report())
        assert pdf.startswith(b"%PDF")

    def test_signed_report_with_unicode(self):
        report = _report(
            signed_at=datetime(2026, 3, 3, 14, 5, tzinfo=timezone.utc),
            signatory_name="Dr. Zoë Ł. Smith",
            signatory_credentials="BDS, MSc",
        )
        pdf = render_report_pdf(Case(**case_row(patient_name="ŁUKASZ NOWAK")), report)
        assert pdf.startswith(b"%PDF")
