"""Unit tests for input sanitization."""

import pytest

from dentarad.security.sanitization import (
    sanitize_attribute,
    sanitize_email,
    sanitize_filename,
    sanitize_html,
    sanitize_object,
    sanitize_patient_name,
    sanitize_patient_ref,
    sanitize_phone,
    sanitize_text,
)


class TestSanitizeHtml:
    def test_allowed_markup_is_kept(self):
        assert sanitize_html("<p><strong>Findings</strong></p>") == "<p><strong>Findings</strong></p>"

    def test_scripts_are_removed_with_content(self):
        assert sanitize_html("<p>ok</p><script>alert(1)</script>") == "<p>ok</p>"

    def test_unknown_tags_are_unwrapped(self):
        assert sanitize_html('<a href="http://x">link</a>') == "link"

    def test_event_handlers_are_dropped(self):
        cleaned = sanitize_html('<p class="lead" onclick="steal()">text</p>')
        assert cleaned == '<p class="lead">text</p>'

    def test_comments_are_dropped(self):
        assert sanitize_html("<p>a<!-- hidden --></p>") == "<p>a</p>"

    def test_empty(self):
        assert sanitize_html(None) == ""


class TestSanitizeText:
    def test_escapes(self):
        assert sanitize_text("<a href='x'>") == "&lt;a href=&#x27;x&#x27;&gt;"

    def test_attribute(self):
        assert sanitize_attribute(' "x" onload=1 ') == "x onload1"


class TestFileNames:
    def test_unsafe_characters(self):
        assert sanitize_filename("my scan (1).zip") == "my_scan__1_.zip"

    def test_leading_dots_and_traversal(self):
        assert sanitize_filename("../../etc/passwd") == "_._etc_passwd"
        assert sanitize_filename("...") == "file"

    def test_length_limit(self):
        assert len(sanitize_filename("a" * 300)) == 255


class TestIdentifiers:
    def test_patient_ref(self):
        assert sanitize_patient_ref("AB-12_3 <x>") == "AB-12_3x"
        assert len(sanitize_patient_ref("9" * 80)) == 50

    def test_email(self):
        assert sanitize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"
        assert sanitize_email("not-an-email") == ""

    def test_phone(self):
        assert sanitize_phone("+44 (0)20 7946-0958 ext") == "+44 (0)20 7946-0958"

    def test_object_is_sanitized_recursively(self):
        assert sanitize_object({"a": ["<b>"], "n": 3}) == {"a": ["&lt;b&gt;"], "n": 3}


class TestPatientName:
    def test_accents_and_punctuation(self):
        assert sanitize_patient_name("  José  O''Brien!! ") == "JOSE O'BRIEN"

    def test_empty_after_cleaning(self):
        with pytest.raises(ValueError, match="empty"):
            sanitize_patient_name("!!!")

    def test_requires_a_letter(self):
        with pytest.raises(ValueError, match="letter"):
            sanitize_patient_name("12345")
