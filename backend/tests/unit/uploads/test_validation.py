"""Unit tests for scan archive validation.

Archives are built in memory; the DICOM members are minimal Part 10 files.
"""

import io
import zipfile

import pytest

from dentarad.config import get_settings
from dentarad.uploads.validation import (
    check_entry_name,
    is_dicom_candidate,
    readable_file_size,
    read_study_metadata,
    validate_dicom_zip,
    validate_upload_size,
)

from fixtures.dicom import make_dicom, make_zip


def _damage_member(archive: bytes, name: str) -> bytes:
    """Flip bytes inside the compressed data of one member."""
    info = zipfile.ZipFile(io.BytesIO(archive)).getinfo(name)
    start = info.header_offset + 30 + len(name.encode()) + len(info.extra)
    data = bytearray(archive)
    for offset in range(start + 4, start + info.compress_size - 4):
        data[offset] ^= 0x5A
    return bytes(data)


def _set_compression_method(archive: bytes, name: str, method: int) -> bytes:
    """Rewrite the compression method of one member in both of its headers."""
    info = zipfile.ZipFile(io.BytesIO(archive)).getinfo(name)
    data = bytearray(archive)
    data[info.header_offset + 8:info.header_offset + 10] = method.to_bytes(2, "little")
    central = data.find(b"PK\x01\x02")
    while central != -1:
        name_length = int.from_bytes(data[central + 28:central + 30], "little")
        if data[central + 46:central + 46 + name_length] == name.encode():
            data[central + 10:central + 12] = method.to_bytes(2, "little")
        central = data.find(b"PK\x01\x02", central + 4)
    return bytes(data)


class TestHelpers:
    def test_readable_file_size(self):
        assert readable_file_size(512) == "512 B"
        assert readable_file_size(2048) == "2.00 KB"
        assert readable_file_size(3 * 1024 * 1024) == "3.00 MB"

    def test_dicom_candidates(self):
        assert is_dicom_candidate("series/IM0001.DCM")
        assert is_dicom_candidate("series/IM0001")
        assert not is_dicom_candidate("series/notes.txt")
        assert not is_dicom_candidate("series/")

    def test_entry_names(self):
        assert check_entry_name("series/IM0001.dcm") is None
        assert "Path traversal" in check_entry_name("../IM0001.dcm")
        assert "Path traversal" in check_entry_name("/etc/passwd")
        assert "Absolute file paths" in check_entry_name("C:/scans/IM0001.dcm")

    def test_upload_size_limits(self, monkeypatch):
        settings = get_settings()
        monkeypatch.setattr(settings, "upload_max_bytes", 10 * 1024 * 1024)

        assert validate_upload_size(5 * 1024 * 1024) is None
        assert "exceeds 10MB limit" in validate_upload_size(11 * 1024 * 1024)
        assert "suspiciously small" in validate_upload_size(1000)

    def test_study_metadata(self, dicom_bytes):
        metadata = read_study_metadata(dicom_bytes)

        assert metadata["study_instance_uid"] == "1.2.826.0.1.3680043.2.1125.1"
        assert metadata["modality"] == "CT"
        assert metadata["patient_name"] == "DOE^JANE"
        assert metadata["study_date"] == "20260101"


@pytest.mark.usefixtures("small_uploads_allowed")
class TestValidateDicomZip:
    def test_valid_archive(self, dicom_bytes):
        archive = make_zip(
            {
                "study/IM0001.dcm": dicom_bytes,
                "study/IM0002": dicom_bytes,
                "study/readme.txt": b"exported from scanner",
            }
        )

        result = validate_dicom_zip(archive, "scan.zip")

        assert result.valid, result.error
        assert result.warnings == []
        assert result.stats.total_files == 3
        assert result.stats.dicom_files == 2
        assert result.stats.study["modality"] == "CT"

    def test_accepts_file_objects(self, dicom_bytes):
        archive = io.BytesIO(make_zip({"IM0001.dcm": dicom_bytes}))

        assert validate_dicom_zip(archive, "SCAN.ZIP").valid

    def test_accepts_paths(self, dicom_bytes, tmp_path):
        path = tmp_path / "scan.zip"
        path.write_bytes(make_zip({"IM0001.dcm": dicom_bytes}))

        assert validate_dicom_zip(path, path.name).valid

    def test_rejects_other_extensions(self, dicom_bytes):
        result = validate_dicom_zip(make_zip({"IM0001.dcm": dicom_bytes}), "scan.rar")

        assert not result.valid
        assert result.error.startswith("Only ZIP files are allowed")

    def test_rejects_non_zip_content(self):
        result = validate_dicom_zip(b"not a zip at all", "scan.zip")

        assert not result.valid
        assert "not a valid ZIP archive" in result.error

    def test_rejects_empty_archive(self):
        result = validate_dicom_zip(make_zip({}), "scan.zip")

        assert result.error == "ZIP file is empty."

    def test_rejects_path_traversal(self, dicom_bytes):
        result = validate_dicom_zip(make_zip({"../IM0001.dcm": dicom_bytes}), "scan.zip")

        assert not result.valid
        assert "Path traversal" in result.error

    def test_rejects_executables(self, dicom_bytes):
        archive = make_zip({"IM0001.dcm": dicom_bytes, "viewer/run.exe": b"MZ" * 100})

        result = validate_dicom_zip(archive, "scan.zip")

        assert not result.valid
        assert "Forbidden file type detected: viewer/run.exe" in result.error

    def test_rejects_archives_without_dicom(self):
        result = validate_dicom_zip(make_zip({"IM0001": b"\x00" * 400}), "scan.zip")

        assert not result.valid
        assert result.error.startswith("No valid DICOM files found")

    def test_rejects_zip_bombs(self):
        archive = make_zip({"IM0001.dcm": b"\x00" * (4 * 1024 * 1024)}, compression=zipfile.ZIP_DEFLATED)

        result = validate_dicom_zip(archive, "scan.zip")

        assert not result.valid
        assert "Possible zip bomb attack" in result.error

    def test_warns_on_bad_meta_header(self, dicom_bytes):
        broken = dicom_bytes[:132] + b"\xff\xff\xff\xff" + dicom_bytes[136:]

        result = validate_dicom_zip(make_zip({"IM0001.dcm": broken}), "scan.zip")

        assert result.valid
        assert any("invalid meta information" in warning for warning in result.warnings)

    def test_unreadable_member_is_a_warning(self, dicom_bytes):
        archive = make_zip(
            {"series/IM0001.dcm": dicom_bytes, "series/IM0002.dcm": dicom_bytes},
            compression=zipfile.ZIP_DEFLATED,
        )
        damaged = _damage_member(archive, "series/IM0002.dcm")

        result = validate_dicom_zip(damaged, "scan.zip")

        assert result.valid
        assert result.stats.dicom_files == 1
        assert "Could not read file: series/IM0002.dcm" in result.warnings

    def test_unsupported_compression_is_a_warning(self, dicom_bytes):
        archive = make_zip({"series/IM0001.dcm": dicom_bytes, "series/IM0002.dcm": dicom_bytes})
        patched = _set_compression_method(archive, "series/IM0002.dcm", 99)

        result = validate_dicom_zip(patched, "scan.zip")

        assert result.valid
        assert "Could not read file: series/IM0002.dcm" in result.warnings

    def test_every_member_unreadable(self, dicom_bytes):
        archive = make_zip({"series/IM0001.dcm": dicom_bytes}, compression=zipfile.ZIP_DEFLATED)

        result = validate_dicom_zip(_damage_member(archive, "series/IM0001.dcm"), "scan.zip")

        assert not result.valid
        assert result.error.startswith("No valid DICOM files found")

    def test_rejects_too_many_entries(self, dicom_bytes):
        members = {f"series/IM{index:05d}.dcm": b"" for index in range(10_001)}
        members["series/IM00000.dcm"] = dicom_bytes

        result = validate_dicom_zip(make_zip(members), "scan.zip")

        assert not result.valid
        assert result.error == "ZIP contains too many files (10001). Maximum allowed is 10000."


def test_minimum_size_applies_by_default(dicom_bytes):
    result = validate_dicom_zip(make_zip({"IM0001.dcm": dicom_bytes}), "scan.zip")

    assert not result.valid
    assert "suspiciously small" in result.error
