"""PDF rendering for diagnostic reports.

Reports are written in a rich-text editor, so the stored content is HTML.
It is reduced to plain text, split into the standard report sections and
laid out with fpdf2.
"""

import io
import re
from datetime import datetime

from bs4 import BeautifulSoup
from fpdf import FPDF

from ..cases.constants import format_field_of_view
from ..cases.models import Case
from .models import Report, ReportImage

SECTION_HEADINGS = ("CLINICAL HISTORY", "TECHNIQUE", "FINDINGS", "IMPRESSION")
SECTION_DEFAULTS = {
    "TECHNIQUE": "CBCT examination performed",
}
_HEADING_RE = re.compile(
    r"^\s*(" + "|".join(SECTION_HEADINGS) + r")\s*:?\s*(.*)$",
    re.IGNORECASE,
)
_BLOCK_TAGS = ("p", "div", "li", "h1", "h2", "h3", "h4", "h5", "h6", "tr")

BRAND_NAME = "DentaRad"
BRAND_EMAIL = "Admin@dentarad.com"


def latin1(text: str) -> str:
    """Core PDF fonts only cover Latin-1; replace anything else."""
    return text.encode("latin-1", "replace").decode("latin-1")


def html_to_text(html: str | None) -> str:
    """Flatten editor HTML to plain text, one block per paragraph."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.insert_after("\n\n")
    text = soup.get_text()
    text = re.sub(r"[ \t]+\n", "\n", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def parse_report_sections(text: str) -> dict[str, str]:
    """Split report text on the standard section headings.

    Text before the first heading is treated as findings.
    """
    sections: dict[str, list[str]] = {}
    current = "FINDINGS"
    for line in text.splitlines():
        match = _HEADING_RE.match(line)
        if match:
            current = match.group(1).upper()
            rest = match.group(2).strip()
            sections.setdefault(current, [])
            if rest:
                sections[current].append(rest)
            continue
        sections.setdefault(current, []).append(line)
    return {name: "\n".join(lines).strip() for name, lines in sections.items() if "\n".join(lines).strip()}


class DentaRadPDF(FPDF):
    """A4 page with the practice header and a page-number footer."""

    def __init__(self, title: str = ""):
        super().__init__(format="A4")
        self.doc_title = title
        self.set_auto_page_break(auto=True, margin=20)
        self.set_title(latin1(title or BRAND_NAME))
        self.set_creator(BRAND_NAME)

    def header(self):
        self.set_font("Helvetica", "B", 18)
        self.set_text_color(0, 102, 204)
        self.cell(100, 10, BRAND_NAME)
        self.set_font("Helvetica", size=9)
        self.set_text_color(90, 90, 90)
        self.cell(0, 10, f"Email: {BRAND_EMAIL}", align="R", new_x="LMARGIN", new_y="NEXT")
        self.set_draw_color(0, 102, 204)
        self.line(self.l_margin, self.get_y(), self.w - self.r_margin, self.get_y())
        self.ln(4)
        self.set_text_color(0, 0, 0)

    def footer(self):
        self.set_y(-15)
        self.set_font("Helvetica", size=8)
        self.set_text_color(120, 120, 120)
        self.cell(0, 10, f"{self.page_no()} - {{nb}}", align="C")

    def key_value(self, label: str, value: str) -> None:
        self.set_font("Helvetica", "B", 10)
        self.cell(50, 6, latin1(label))
        self.set_font("Helvetica", size=10)
        self.multi_cell(0, 6, latin1(value), new_x="LMARGIN", new_y="NEXT")

    def section(self, heading: str, body: str) -> None:
        self.ln(3)
        self.set_font("Helvetica", "B", 11)
        self.cell(0, 7, latin1(heading), new_x="LMARGIN", new_y="NEXT")
        self.set_font("Helvetica", size=10)
        self.multi_cell(0, 5, latin1(body), new_x="LMARGIN", new_y="NEXT")


def render_report_pdf(
    case: Case,
    report: Report,
    images: list[tuple[ReportImage, bytes]] | None = None,
) -> bytes:
    """Render a report as PDF.

    Args:
        case: The case, with its clinic name
        report: The report version to render
        images: Attached images with their content, placed after the text

    Returns:
        PDF bytes
    """
    pdf = DentaRadPDF(title=f"Diagnostic Report - {case.patient_name}")
    pdf.alias_nb_pages()
    pdf.add_page()

    pdf.key_value("Patient:", case.patient_name)
    pdf.key_value("Referring Clinic:", case.clinic_name or "")
    pdf.key_value("Study:", f"CBCT Scan - {format_field_of_view(case.field_of_view)}")
    if case.upload_date:
        pdf.key_value("Study date:", case.upload_date.strftime("%d/%m/%Y"))
    if case.patient_internal_id:
        pdf.key_value("Accession Number:", case.patient_internal_id)
    pdf.key_value("Verification flag:", "Verified" if report.is_signed else "Pending")

    pdf.ln(4)
    pdf.set_font("Helvetica", "B", 16)
    pdf.cell(0, 10, "Diagnostic Report", align="C", new_x="LMARGIN", new_y="NEXT")

    sections = parse_report_sections(html_to_text(report.report_content))
    history = html_to_text(report.clinical_history) or sections.get("CLINICAL HISTORY") or case.clinical_question
    pdf.section("CLINICAL HISTORY", history or "Not provided")
    for heading in SECTION_HEADINGS[1:]:
        body = sections.get(heading) or SECTION_DEFAULTS.get(heading, "Not provided")
        pdf.section(heading, body)

    for image, content in images or []:
        pdf.add_page()
        pdf.image(io.BytesIO(content), w=pdf.epw)
        if image.caption:
            pdf.set_font("Helvetica", "I", 9)
            pdf.multi_cell(0, 5, latin1(image.caption), new_x="LMARGIN", new_y="NEXT")

    if report.signatory_name and report.signed_at:
        _signature_block(pdf, report.signatory_name, report.signatory_credentials, report.signed_at)

    return bytes(pdf.output())


def _signature_block(pdf: DentaRadPDF, name: str, credentials: str | None, signed_at: datetime) -> None:
    pdf.ln(8)
    pdf.set_font("Helvetica", "I", 10)
    pdf.cell(0, 6, "***End of Report***", align="C", new_x="LMARGIN", new_y="NEXT")
    pdf.ln(4)
    pdf.set_font("Helvetica", "B", 11)
    pdf.cell(0, 6, latin1(name), new_x="LMARGIN", new_y="NEXT")
    if credentials:
        pdf.set_font("Helvetica", size=10)
        pdf.cell(0, 6, latin1(f"({credentials})"), new_x="LMARGIN", new_y="NEXT")
    pdf.set_font("Helvetica", size=9)
    pdf.cell(
        0,
        6,
        f"Report Date: {signed_at.strftime('%d %b %Y - %H:%M')}",
        new_x="LMARGIN",
        new_y="NEXT",
    )
