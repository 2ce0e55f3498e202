"""Dropbox HTTP API client.

Case folders are mirrored to the practice Dropbox so reporters can open
scans with their desktop tools. Files under 150 MB go up in a single
``files/upload`` call; larger ones use the start/append/finish upload
session protocol in 8 MB chunks.
"""

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ..config import get_settings
from ..logging import get_context_logger

logger = get_context_logger(__name__)

API_BASE = "https://api.dropboxapi.com/2"
CONTENT_BASE = "https://content.dropboxapi.com/2"
TOKEN_URL = "https://api.dropbox.com/oauth2/token"

CHUNK_SIZE = 8 * 1024 * 1024
SIMPLE_UPLOAD_LIMIT = 150 * 1024 * 1024
# Refresh a little before Dropbox says the token expires.
TOKEN_EXPIRY_MARGIN = 60

ProgressCallback = Callable[[dict[str, int]], Awaitable[None] | None]


class DropboxError(Exception):
    """Raised when a Dropbox API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DropboxClient:
    """Client for the Dropbox HTTP API.

    The HTTP client can be injected, which tests use to pass an
    ``httpx.MockTransport``.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self._http_client = http_client
        self._clock = clock
        self.app_key = settings.dropbox_app_key
        self.app_secret = settings.dropbox_app_secret
        self.refresh_token = settings.dropbox_refresh_token
        self.cases_root = settings.dropbox_cases_root.rstrip("/")

        self._access_token: str | None = settings.dropbox_access_token or None
        # A statically configured token never expires on our side.
        self._token_expires_at: float | None = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=10.0))
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # =========================================================================
    # Authentication
    # =========================================================================

    async def refresh_access_token(self) -> str:
        """Exchange the long-lived refresh token for an access token.

        Raises:
            DropboxError: If Dropbox rejects the refresh
        """
        response = await self.http_client.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
                "client_id": self.app_key,
                "client_secret": self.app_secret,
            },
        )
        if response.status_code != 200:
            raise DropboxError(
                f"Failed to refresh Dropbox token: {response.text}",
                status_code=response.status_code,
            )

        data = response.json()
        self._access_token = data["access_token"]
        expires_in = data.get("expires_in")
        self._token_expires_at = (
            self._clock() + expires_in - TOKEN_EXPIRY_MARGIN if expires_in else None
        )
        logger.info("Refreshed Dropbox access token")
        return self._access_token

    async def get_access_token(self) -> str:
        """Return a valid access token, refreshing it when needed."""
        expired = self._token_expires_at is not None and self._clock() >= self._token_expires_at
        if self._access_token and not expired:
            return self._access_token
        if not self.refresh_token:
            raise DropboxError("Dropbox is not configured")
        return await self.refresh_access_token()

    async def _headers(self, **extra: str) -> dict[str, str]:
        token = await self.get_access_token()
        return {"Authorization": f"Bearer {token}", **extra}

    async def _rpc(self, endpoint: str, body: dict[str, Any]) -> httpx.Response:
        headers = await self._headers(**{"Content-Type": "application/json"})
        return await self.http_client.post(f"{API_BASE}/{endpoint}", headers=headers, json=body)

    async def _content(self, endpoint: str, arg: dict[str, Any], data: bytes) -> httpx.Response:
        headers = await self._headers(
            **{
                "Content-Type": "application/octet-stream",
                "Dropbox-API-Arg": json.dumps(arg),
            }
        )
        return await self.http_client.post(f"{CONTENT_BASE}/{endpoint}", headers=headers, content=data)

    # =========================================================================
    # Uploads
    # =========================================================================

    async def upload(
        self,
        path: str,
        data: bytes,
        progress_cb: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Upload a file, overwriting anything at ``path``.

        Args:
            path: Full Dropbox path of the file
            data: File content
            progress_cb: Called with ``{loaded, total, percentage}`` after each chunk

        Returns:
            Dropbox file metadata of the uploaded file

        Raises:
            DropboxError: If any call of the upload fails
        """
        total = len(data)
        commit = {"path": path, "mode": "overwrite", "autorename": False, "mute": False}

        if total < SIMPLE_UPLOAD_LIMIT:
            response = await self._content("files/upload", commit, data)
            if response.status_code != 200:
                raise DropboxError(f"Dropbox upload failed: {response.text}", response.status_code)
            await _report(progress_cb, total, total)
            return response.json()

        return await self._upload_session(path, data, commit, progress_cb)

    async def _upload_session(
        self,
        path: str,
        data: bytes,
        commit: dict[str, Any],
        progress_cb: ProgressCallback | None,
    ) -> dict[str, Any]:
        total = len(data)
        chunk_count = -(-total // CHUNK_SIZE)
        session_id: str | None = None
        offset = 0
        result: dict[str, Any] = {}

        logger.info(f"Starting chunked Dropbox upload of {path} in {chunk_count} chunks")

        for index in range(chunk_count):
            chunk = data[offset:offset + CHUNK_SIZE]

            if index == 0:
                response = await self._content("files/upload_session/start", {"close": False}, chunk)
                if response.status_code != 200:
                    raise DropboxError(f"Failed to start upload session: {response.text}", response.status_code)
                session_id = response.json()["session_id"]
            elif index < chunk_count - 1:
                response = await self._content(
                    "files/upload_session/append_v2",
                    {"cursor": {"session_id": session_id, "offset": offset}, "close": False},
                    chunk,
                )
                if response.status_code != 200:
                    raise DropboxError(
                        f"Failed to append chunk at offset {offset}: {response.text}",
                        response.status_code,
                    )
            else:
                response = await self._content(
                    "files/upload_session/finish",
                    {"cursor": {"session_id": session_id, "offset": offset}, "commit": commit},
                    chunk,
                )
                if response.status_code != 200:
                    raise DropboxError(f"Failed to finish upload session: {response.text}", response.status_code)
                result = response.json()

            offset += len(chunk)
            await _report(progress_cb, offset, total)

        logger.info(f"Chunked Dropbox upload of {path} complete")
        return result

    # =========================================================================
    # Folders and links
    # =========================================================================

    async def list_folder(self, path: str) -> list[dict[str, Any]]:
        """List the entries of a folder, following pagination cursors."""
        response = await self._rpc("files/list_folder", {"path": path.rstrip("/")})
        if response.status_code != 200:
            raise DropboxError(f"Failed to list Dropbox folder: {response.text}", response.status_code)

        data = response.json()
        entries = list(data.get("entries", []))
        while data.get("has_more"):
            response = await self._rpc("files/list_folder/continue", {"cursor": data["cursor"]})
            if response.status_code != 200:
                raise DropboxError(f"Failed to list Dropbox folder: {response.text}", response.status_code)
            data = response.json()
            entries.extend(data.get("entries", []))
        return entries

    async def get_temporary_link(self, path: str) -> str:
        """Create a four hour download link for a file."""
        response = await self._rpc("files/get_temporary_link", {"path": path})
        if response.status_code != 200:
            raise DropboxError(f"Failed to generate download link: {response.text}", response.status_code)
        return response.json()["link"]

    async def create_folder(self, path: str) -> bool:
        """Create a folder.

        Returns:
            True if created, False if it already existed
        """
        response = await self._rpc("files/create_folder_v2", {"path": path.rstrip("/"), "autorename": False})
        if response.status_code == 200:
            return True
        if response.status_code == 409 and "conflict" in response.text:
            return False
        raise DropboxError(f"Failed to create folder {path}: {response.text}", response.status_code)

    async def delete(self, path: str) -> bool:
        """Delete a file or folder.

        Returns:
            True if deleted, False if nothing was there
        """
        response = await self._rpc("files/delete_v2", {"path": path.rstrip("/")})
        if response.status_code == 200:
            return True
        if response.status_code == 409 and "not_found" in response.text:
            return False
        raise DropboxError(f"Failed to delete {path}: {response.text}", response.status_code)

    def case_folder(self, folder_name: str) -> str:
        return f"{self.cases_root}/{folder_name}"


async def _report(progress_cb: ProgressCallback | None, loaded: int, total: int) -> None:
    if progress_cb is None:
        return
    outcome = progress_cb(
        {
            "loaded": loaded,
            "total": total,
            "percentage": round(loaded / total * 100) if total else 100,
        }
    )
    if outcome is not None:
        await outcome


_dropbox_client: DropboxClient | None = None


def get_dropbox_client() -> DropboxClient:
    """Get the Dropbox client singleton."""
    global _dropbox_client
    if _dropbox_client is None:
        _dropbox_client = DropboxClient()
    return _dropbox_client
