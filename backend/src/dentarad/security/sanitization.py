"""Input sanitization for free-text fields, file names and report HTML.

Report bodies come from a rich-text editor and are stored as HTML, so
they go through an allow-list sanitizer rather than being escaped.
"""

import re
import unicodedata
from typing import Any

from bs4 import BeautifulSoup, Comment

ALLOWED_TAGS = frozenset(
    {
        "b", "i", "em", "strong", "p", "br", "ul", "ol", "li",
        "h1", "h2", "h3", "h4", "h5", "h6",
        "span", "div", "table", "tr", "td", "th", "tbody", "thead",
    }
)
ALLOWED_ATTRIBUTES = frozenset({"class", "style"})
# Tags whose content is dropped along with the tag itself.
_DROP_CONTENT_TAGS = frozenset({"script", "style", "iframe", "object", "embed", "template"})

_TEXT_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def sanitize_text(value: str | None) -> str:
    """Escape every HTML-significant character in plain text."""
    if not value:
        return ""
    return "".join(_TEXT_ESCAPES.get(ch, ch) for ch in value)


def sanitize_attribute(value: str | None) -> str:
    """Strip characters that could break out of an HTML attribute."""
    if not value:
        return ""
    return re.sub(r"[<>\"'`=]", "", value).strip()


def sanitize_html(dirty: str | None) -> str:
    """Keep only allow-listed tags and attributes in report HTML.

    Disallowed tags are unwrapped so their text survives, except for
    script-like tags which are removed with their content.
    """
    if not dirty:
        return ""

    soup = BeautifulSoup(dirty, "html.parser")

    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for tag in soup.find_all(True):
        if tag.name in _DROP_CONTENT_TAGS:
            tag.decompose()
        elif tag.name not in ALLOWED_TAGS:
            tag.unwrap()
        else:
            tag.attrs = {
                name: value
                for name, value in tag.attrs.items()
                if name in ALLOWED_ATTRIBUTES
            }

    return str(soup)


def sanitize_filename(filename: str | None) -> str:
    """Make a file name safe for storage keys and Dropbox paths."""
    if not filename:
        return "file"
    value = re.sub(r"[^a-zA-Z0-9._-]", "_", filename)
    value = re.sub(r"\.{2,}", ".", value)
    value = value.lstrip(".")
    return value[:255] or "file"


def sanitize_patient_ref(ref: str | None) -> str:
    """Clinic-side patient reference: letters, digits, hyphen, underscore."""
    if not ref:
        return ""
    return re.sub(r"[^a-zA-Z0-9\-_]", "", ref)[:50]


def sanitize_email(email: str | None) -> str:
    """Normalize an email address, or return an empty string if invalid."""
    if not email:
        return ""
    trimmed = email.strip().lower()
    if not _EMAIL_RE.match(trimmed):
        return ""
    return trimmed


def sanitize_phone(phone: str | None) -> str:
    if not phone:
        return ""
    return re.sub(r"[^0-9+\s()\-]", "", phone).strip()


def sanitize_object(obj: Any) -> Any:
    """Recursively escape every string in a dict or list."""
    if isinstance(obj, str):
        return sanitize_text(obj)
    if isinstance(obj, dict):
        return {key: sanitize_object(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [sanitize_object(item) for item in obj]
    return obj


def sanitize_patient_name(name: str) -> str:
    """Normalize a patient name for folder names and DICOM tags.

    Upper-cases, strips accents, keeps letters, digits, spaces, hyphens and
    apostrophes, and collapses repeats.

    Raises:
        ValueError: If nothing usable is left or there is no letter
    """
    decomposed = unicodedata.normalize("NFD", name.upper())
    without_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    value = re.sub(r"[^A-Z0-9\s\-']", "", without_marks)
    value = re.sub(r"'{2,}", "'", value)
    value = re.sub(r"-{2,}", "-", value)
    value = re.sub(r"\s+", " ", value).strip()[:50].strip()

    if not value:
        raise ValueError("Patient name cannot be empty after sanitization")
    if not re.search(r"[A-Z]", value):
        raise ValueError("Patient name must contain at least one letter")
    return value
