"""Validation of uploaded CBCT scan archives.

Clinics upload a ZIP of DICOM files. Before anything is stored the archive
is checked for size, format, zip-bomb and path-traversal tricks,
executables, and that it really contains DICOM Part 10 files.
"""

import io
import logging
import os
import re
import struct
import zipfile
import zlib
from pathlib import Path
from typing import Any, BinaryIO

import pydicom
from pydantic import BaseModel, Field
from pydicom.errors import InvalidDicomError

from ..config import get_settings

logger = logging.getLogger(__name__)

MAX_COMPRESSION_RATIO = 100
MAX_FILES_IN_ZIP = 10000
MAX_DICOM_FILES_TO_CHECK = 20

# Raised while reading a damaged member or one with an unsupported compression method.
ARCHIVE_READ_ERRORS = (zipfile.BadZipFile, OSError, EOFError, RuntimeError, NotImplementedError, zlib.error)

FORBIDDEN_EXTENSIONS = (
    ".exe", ".sh", ".bat", ".cmd", ".scr", ".com",
    ".js", ".vbs", ".jar", ".app", ".dmg", ".deb",
    ".rpm", ".msi", ".dll", ".so", ".dylib",
)

# DICOM Part 10: 128 byte preamble, then "DICM", then the group 0002 meta header.
DICOM_PREFIX_OFFSET = 128
DICOM_MAGIC = b"DICM"
FILE_META_GROUP_LENGTH_TAG = b"\x02\x00\x00\x00"

_WINDOWS_DRIVE_RE = re.compile(r"^[A-Za-z]:")


class ZipStats(BaseModel):
    total_files: int
    dicom_files: int
    compression_ratio: float
    study: dict[str, Any] | None = None


class ZipValidationResult(BaseModel):
    valid: bool
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    stats: ZipStats | None = None


def readable_file_size(size: int) -> str:
    """Format a byte count as ``B``, ``KB`` or ``MB``."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.2f} KB"
    return f"{size / (1024 * 1024):.2f} MB"


def validate_upload_size(size: int) -> str | None:
    """Check a declared upload size.

    Returns:
        An error message, or None if the size is acceptable
    """
    settings = get_settings()
    if size > settings.upload_max_bytes:
        limit_mb = settings.upload_max_bytes // (1024 * 1024)
        return f"File size ({size / (1024 * 1024):.2f}MB) exceeds {limit_mb}MB limit."
    if size < settings.upload_min_bytes:
        return "File is suspiciously small for a DICOM scan. Minimum size is 1MB."
    return None


def is_dicom_candidate(name: str) -> bool:
    """DICOM files usually have a ``.dcm`` extension or no extension at all."""
    lower = name.lower()
    base = lower.rsplit("/", 1)[-1]
    return lower.endswith(".dcm") or (len(base) > 0 and "." not in base)


def check_entry_name(name: str) -> str | None:
    """Return an error for unsafe or forbidden archive entry names."""
    if ".." in name or name.startswith("/") or name.startswith("\\") or "\\..\\" in name:
        return f"Invalid file path detected: {name}. Path traversal attempts are not allowed."
    if _WINDOWS_DRIVE_RE.match(name):
        return f"Absolute file paths are not allowed: {name}"
    return None


def read_study_metadata(content: bytes) -> dict[str, Any]:
    """Read identifying tags from a DICOM file header, skipping pixel data."""
    dataset = pydicom.dcmread(io.BytesIO(content), stop_before_pixels=True)
    return {
        "study_instance_uid": str(dataset.get("StudyInstanceUID", "")) or None,
        "modality": str(dataset.get("Modality", "")) or None,
        "patient_name": str(dataset.get("PatientName", "")) or None,
        "study_date": str(dataset.get("StudyDate", "")) or None,
    }


def _open_source(source: str | os.PathLike | bytes | BinaryIO) -> tuple[BinaryIO, int]:
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(source), len(source)
    if isinstance(source, (str, os.PathLike)):
        path = Path(source)
        return path.open("rb"), path.stat().st_size
    source.seek(0, os.SEEK_END)
    size = source.tell()
    source.seek(0)
    return source, size


def validate_dicom_zip(
    source: str | os.PathLike | bytes | BinaryIO,
    file_name: str,
) -> ZipValidationResult:
    """Validate a scan archive.

    Checks stop at the first failure, which is reported in ``error``.
    Problems that do not block the upload are collected in ``warnings``.

    Args:
        source: Path, bytes or open binary file of the archive
        file_name: Original file name as uploaded

    Returns:
        Validation result with archive statistics when valid
    """
    if not file_name.lower().endswith(".zip"):
        return ZipValidationResult(
            valid=False,
            error="Only ZIP files are allowed. Please upload a ZIP archive containing DICOM files.",
        )

    fileobj, size = _open_source(source)
    owns_file = isinstance(source, (str, os.PathLike))
    try:
        size_error = validate_upload_size(size)
        if size_error:
            return ZipValidationResult(valid=False, error=size_error)

        if fileobj.read(2) != b"PK":
            return ZipValidationResult(
                valid=False,
                error="File is not a valid ZIP archive. Please ensure you are uploading a ZIP file.",
            )
        fileobj.seek(0)

        try:
            return _validate_contents(fileobj, size)
        except (zipfile.LargeZipFile, *ARCHIVE_READ_ERRORS) as e:
            logger.warning(f"ZIP validation error for {file_name}: {e}")
            return ZipValidationResult(
                valid=False,
                error="Failed to validate ZIP contents. The file may be corrupted or invalid.",
            )
    finally:
        if owns_file:
            fileobj.close()


def _validate_contents(fileobj: BinaryIO, size: int) -> ZipValidationResult:
    warnings: list[str] = []

    with zipfile.ZipFile(fileobj) as archive:
        entries = archive.infolist()

        if len(entries) > MAX_FILES_IN_ZIP:
            return ZipValidationResult(
                valid=False,
                error=f"ZIP contains too many files ({len(entries)}). Maximum allowed is {MAX_FILES_IN_ZIP}.",
            )
        if not entries:
            return ZipValidationResult(valid=False, error="ZIP file is empty.")

        files = [entry for entry in entries if not entry.is_dir()]
        total_uncompressed = sum(entry.file_size for entry in files)

        compression_ratio = total_uncompressed / size
        if compression_ratio > MAX_COMPRESSION_RATIO:
            return ZipValidationResult(
                valid=False,
                error=f"Suspicious compression ratio ({compression_ratio:.1f}:1) detected. Possible zip bomb attack.",
            )

        for entry in entries:
            name_error = check_entry_name(entry.filename)
            if name_error:
                return ZipValidationResult(valid=False, error=name_error)

        for entry in files:
            if entry.filename.lower().endswith(FORBIDDEN_EXTENSIONS):
                return ZipValidationResult(
                    valid=False,
                    error=f"Forbidden file type detected: {entry.filename}. Executable files are not allowed.",
                )

        dicom_count = 0
        checked = 0
        study: dict[str, Any] | None = None
        for entry in files:
            if checked >= MAX_DICOM_FILES_TO_CHECK:
                break
            if not is_dicom_candidate(entry.filename):
                continue
            checked += 1

            try:
                content = archive.read(entry)
            except ARCHIVE_READ_ERRORS:
                warnings.append(f"Could not read file: {entry.filename}")
                continue

            if len(content) <= DICOM_PREFIX_OFFSET + 4:
                continue
            if content[DICOM_PREFIX_OFFSET:DICOM_PREFIX_OFFSET + 4] != DICOM_MAGIC:
                continue

            dicom_count += 1
            if content[132:136] != FILE_META_GROUP_LENGTH_TAG:
                warnings.append(f"File {entry.filename} has DICM header but invalid meta information")

            if study is None:
                try:
                    study = read_study_metadata(content)
                except (InvalidDicomError, ValueError, EOFError, KeyError, TypeError, struct.error) as e:
                    warnings.append(f"Could not read DICOM header of {entry.filename}: {e}")
                    study = {}

    if dicom_count == 0:
        return ZipValidationResult(
            valid=False,
            error="No valid DICOM files found in ZIP archive. Please ensure your ZIP contains DICOM scan files.",
        )

    return ZipValidationResult(
        valid=True,
        warnings=warnings,
        stats=ZipStats(
            total_files=len(files),
            dicom_files=dicom_count,
            compression_ratio=round(compression_ratio, 1),
            study=study or None,
        ),
    )
