"""Orthanc PACS client.

Scans are pushed to Orthanc so the OHIF viewer can display them over
DICOMweb. The browser never talks to Orthanc directly: DICOMweb requests
are proxied through the API, which adds the Orthanc credentials.
"""

import io
import zipfile
from collections.abc import Iterator
from typing import Any
from urllib.parse import quote

import httpx

from ..config import get_settings
from ..logging import get_context_logger

logger = get_context_logger(__name__)

STUDY_LIST_LIMIT = 10
PREVIEW_INSTANCES_PER_SERIES = 3


class OrthancError(Exception):
    """Raised when Orthanc returns an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OrthancClient:
    """Client for the Orthanc REST API and its DICOMweb plugin."""

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        settings = get_settings()
        self.base_url = settings.orthanc_url.rstrip("/")
        self.viewer_url = settings.ohif_viewer_url.rstrip("/")
        self._auth = (settings.orthanc_username, settings.orthanc_password)
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                auth=self._auth,
                timeout=httpx.Timeout(60.0, connect=10.0),
                headers={"Accept": "application/json"},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_json(self, path: str) -> Any:
        response = await self.http_client.get(f"{self.base_url}{path}", auth=self._auth)
        if response.status_code != 200:
            raise OrthancError(f"GET {path} failed: {response.status_code}", response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise OrthancError(f"GET {path} returned a non-JSON body", response.status_code) from e

    async def check_connection(self) -> dict[str, Any]:
        """Ping ``/system``. Never raises."""
        try:
            data = await self._get_json("/system")
        except (httpx.HTTPError, OrthancError) as e:
            logger.warning(f"Orthanc connection check failed: {e}")
            return {"connected": False, "error": str(e), "url": f"{self.base_url}/system"}
        return {
            "connected": True,
            "version": data.get("Version"),
            "name": data.get("Name"),
            "url": f"{self.base_url}/system",
        }

    async def list_studies(self, limit: int = STUDY_LIST_LIMIT) -> dict[str, Any]:
        """The first ``limit`` studies with their main tags."""
        study_ids = await self._get_json("/studies")
        studies = []
        for study_id in study_ids[:limit]:
            try:
                detail = await self.get_study_tags(study_id)
            except OrthancError as e:
                logger.warning(f"Skipping study {study_id}: {e}")
                continue
            tags = detail.get("MainDicomTags", {})
            patient_tags = detail.get("PatientMainDicomTags", {})
            studies.append(
                {
                    "id": study_id,
                    "study_instance_uid": tags.get("StudyInstanceUID"),
                    "patient_name": patient_tags.get("PatientName") or tags.get("PatientName") or "Unknown",
                    "study_date": tags.get("StudyDate") or "Unknown",
                    "study_description": tags.get("StudyDescription") or "",
                    "instances": len(detail.get("Instances", [])),
                }
            )
        return {"total_studies": len(study_ids), "studies": studies}

    async def get_study_tags(self, study_id: str) -> dict[str, Any]:
        return await self._get_json(f"/studies/{study_id}")

    async def find_study(self, study_instance_uid: str) -> str | None:
        """Orthanc id of the study with this StudyInstanceUID, if stored."""
        response = await self.http_client.post(
            f"{self.base_url}/tools/find",
            auth=self._auth,
            json={"Level": "Study", "Query": {"StudyInstanceUID": study_instance_uid}},
        )
        if response.status_code != 200:
            raise OrthancError(f"Study lookup failed: {response.status_code}", response.status_code)
        matches = response.json()
        return matches[0] if matches else None

    async def get_study(self, study_instance_uid: str) -> dict[str, Any] | None:
        """A study with its series and a few preview instances per series.

        Returns:
            Study details, or None if Orthanc does not hold the study
        """
        study_id = await self.find_study(study_instance_uid)
        if study_id is None:
            return None

        study = await self.get_study_tags(study_id)
        tags = study.get("MainDicomTags", {})
        patient_tags = study.get("PatientMainDicomTags", {})

        series_details = []
        for series_id in study.get("Series", []):
            try:
                series = await self._get_json(f"/series/{series_id}")
            except OrthancError as e:
                logger.warning(f"Skipping series {series_id}: {e}")
                continue
            series_tags = series.get("MainDicomTags", {})
            instances = series.get("Instances", [])
            series_details.append(
                {
                    "id": series_id,
                    "series_instance_uid": series_tags.get("SeriesInstanceUID"),
                    "series_description": series_tags.get("SeriesDescription") or "No description",
                    "modality": series_tags.get("Modality") or "Unknown",
                    "instance_count": len(instances),
                    "instances": [
                        {
                            "id": instance_id,
                            "preview_url": f"{self.base_url}/instances/{instance_id}/preview",
                            "download_url": f"{self.base_url}/instances/{instance_id}/file",
                        }
                        for instance_id in instances[:PREVIEW_INSTANCES_PER_SERIES]
                    ],
                }
            )

        return {
            "id": study_id,
            "study_instance_uid": tags.get("StudyInstanceUID"),
            "patient_name": patient_tags.get("PatientName") or "Unknown",
            "patient_id": patient_tags.get("PatientID") or "Unknown",
            "study_date": tags.get("StudyDate") or "Unknown",
            "study_time": tags.get("StudyTime") or "Unknown",
            "study_description": tags.get("StudyDescription") or "No description",
            "accession_number": tags.get("AccessionNumber") or "",
            "series_count": len(study.get("Series", [])),
            "instance_count": len(study.get("Instances", [])),
            "series": series_details,
        }

    async def verify_study(self, study_instance_uid: str) -> bool:
        """Whether Orthanc holds the study."""
        try:
            return await self.find_study(study_instance_uid) is not None
        except (httpx.HTTPError, OrthancError) as e:
            logger.warning(f"Study verification failed for {study_instance_uid}: {e}")
            return False

    async def upload_instance(self, dicom_bytes: bytes) -> dict[str, Any]:
        """Store one DICOM file.

        Returns:
            Orthanc's answer, including ``ID`` and ``ParentStudy``
        """
        response = await self.http_client.post(
            f"{self.base_url}/instances",
            auth=self._auth,
            content=dicom_bytes,
            headers={"Content-Type": "application/dicom"},
        )
        if response.status_code != 200:
            raise OrthancError(f"Instance upload failed: {response.status_code} {response.text}", response.status_code)
        return response.json()

    async def dicomweb(
        self,
        method: str,
        path: str,
        query: str = "",
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Forward a DICOMweb request to Orthanc and return its response."""
        headers = headers or {}
        url = f"{self.base_url}/dicom-web/{path.lstrip('/')}"
        if query:
            url = f"{url}?{query}"
        return await self.http_client.request(
            method,
            url,
            auth=self._auth,
            content=body if method not in ("GET", "HEAD") else None,
            headers={
                "Accept": headers.get("accept", "application/dicom+json"),
                "Content-Type": headers.get("content-type", "application/dicom+json"),
            },
        )

    def get_viewer_url(self, study_instance_uid: str) -> str:
        return f"{self.viewer_url}/viewer?StudyInstanceUIDs={quote(study_instance_uid)}"


def iter_dicom_members(archive: bytes) -> Iterator[bytes]:
    """Yield the DICOM Part 10 files inside a zip archive."""
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        for entry in zf.infolist():
            if entry.is_dir():
                continue
            content = zf.read(entry)
            if len(content) > 132 and content[128:132] == b"DICM":
                yield content


_orthanc_client: OrthancClient | None = None


def get_orthanc_client() -> OrthancClient:
    """Get the Orthanc client singleton."""
    global _orthanc_client
    if _orthanc_client is None:
        _orthanc_client = OrthancClient()
    return _orthanc_client
