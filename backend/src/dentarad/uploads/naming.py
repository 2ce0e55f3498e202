"""Case folder names.

Each case gets a folder named after the patient plus a five digit counter,
e.g. ``SMITH_JOHN_00003``. The same folder name is used in storage and
Dropbox.
"""

import re
from collections.abc import Iterable

from ..security.sanitization import sanitize_patient_ref, sanitize_text

_COUNTER_RE = re.compile(r"_(\d{5})$")


def folder_base_name(patient_name: str) -> str:
    """Upper-case the name, drop punctuation and join words with underscores."""
    cleaned = re.sub(r"[^A-Z0-9\s]", "", patient_name.upper()).strip()
    return re.sub(r"\s+", "_", cleaned)


def next_folder_counter(existing_names: Iterable[str | None]) -> int:
    """One more than the highest ``_NNNNN`` suffix among existing folders."""
    highest = 0
    for name in existing_names:
        if not name:
            continue
        match = _COUNTER_RE.search(name)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


def generate_folder_name(patient_name: str, existing_names: Iterable[str | None]) -> str:
    """Build the next folder name for a patient.

    Args:
        patient_name: Patient name as entered
        existing_names: Folder names already used for this patient

    Returns:
        Folder name such as ``SMITH_JOHN_00002``
    """
    return f"{folder_base_name(patient_name)}_{next_folder_counter(existing_names):05d}"


def sanitize_form_data(form: dict) -> dict:
    """Escape free-text upload form fields before they are stored."""
    return {
        "patient_name": sanitize_text(form.get("patient_name")),
        "patient_internal_id": sanitize_patient_ref(form.get("patient_internal_id")) if form.get("patient_internal_id") else "",
        "clinical_question": sanitize_text(form.get("clinical_question")),
        "special_instructions": sanitize_text(form["special_instructions"]) if form.get("special_instructions") else None,
    }
