"""Diagnostic reports: authoring, templates, PDF output and dictation."""

from .manager import ReportManager
from .models import CaseWithReport, Report, ReportImage, ReportTemplate
from .templates import TemplateService

__all__ = [
    "CaseWithReport",
    "Report",
    "ReportImage",
    "ReportManager",
    "ReportTemplate",
    "TemplateService",
]
