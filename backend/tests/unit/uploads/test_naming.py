"""Unit tests for case folder naming."""

from dentarad.uploads.naming import (
    folder_base_name,
    generate_folder_name,
    next_folder_counter,
    sanitize_form_data,
)


class TestFolderNames:
    def test_base_name(self):
        assert folder_base_name("Jane  O'Neil-Doe") == "JANE_ONEILDOE"

    def test_first_folder_starts_at_one(self):
        assert generate_folder_name("Jane Doe", []) == "JANE_DOE_00001"

    def test_counter_follows_highest_existing(self):
        existing = ["JANE_DOE_00001", None, "JANE_DOE_00007", "JANE_DOE_notes"]
        assert next_folder_counter(existing) == 8
        assert generate_folder_name("Jane Doe", existing) == "JANE_DOE_00008"


class TestFormSanitizing:
    def test_free_text_is_escaped(self):
        cleaned = sanitize_form_data(
            {
                "patient_name": "<b>Jane</b>",
                "patient_internal_id": "P 001/<x>",
                "clinical_question": "Root & canal?",
            }
        )

        assert cleaned["patient_name"] == "&lt;b&gt;Jane&lt;&#x2F;b&gt;"
        assert cleaned["patient_internal_id"] == "P001x"
        assert cleaned["clinical_question"] == "Root &amp; canal?"
        assert cleaned["special_instructions"] is None
