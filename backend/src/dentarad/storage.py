"""S3-compatible storage client for DentaRad.

Scans, report PDFs, pregenerated download bundles, report images and
invoice PDFs live in separate buckets. Supabase Storage exposes an S3
protocol endpoint; MinIO is used for local development.
"""

import hashlib
import threading
import time
from collections.abc import Callable
from io import BytesIO
from typing import BinaryIO

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import ClientError

from .config import get_settings

# Resumable uploads are sent in 6 MB parts.
RESUMABLE_PART_SIZE = 6 * 1024 * 1024
# Signed URLs for report images are valid for one hour.
SIGNED_URL_TTL = 3600


class StorageClient:
    """S3-compatible storage client for scan and report files."""

    def __init__(self, client=None):
        settings = get_settings()
        self._client = client or boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            region_name=settings.s3_region,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                retries={"max_attempts": 5, "mode": "standard"},
            ),
        )
        self.scans_bucket = settings.scans_bucket
        self.reports_bucket = settings.reports_bucket
        self.downloads_bucket = settings.downloads_bucket
        self.report_images_bucket = settings.report_images_bucket
        self.invoices_bucket = settings.invoices_bucket

    def upload_file(
        self,
        bucket: str,
        key: str,
        data: bytes | BinaryIO,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Upload a file to storage, overwriting any existing object.

        Args:
            bucket: Target bucket
            key: Object key (path within bucket)
            data: File content as bytes or file-like object
            content_type: MIME type of the content
            metadata: Optional metadata to attach to the object

        Returns:
            Object path as ``bucket/key``
        """
        if isinstance(data, bytes):
            data = BytesIO(data)

        extra_args = {"ContentType": content_type}
        if metadata:
            extra_args["Metadata"] = metadata

        self._client.upload_fileobj(data, bucket, key, ExtraArgs=extra_args)
        return f"{bucket}/{key}"

    def upload_fileobj_resumable(
        self,
        bucket: str,
        key: str,
        fileobj: BinaryIO,
        total_bytes: int,
        content_type: str = "application/zip",
        on_progress: Callable[[int, int], None] | None = None,
    ) -> str:
        """Upload a large object as a multipart upload.

        Parts are retried individually by the transfer manager, so a dropped
        connection only resends the part in flight.

        Args:
            bucket: Target bucket
            key: Object key
            fileobj: Open binary file positioned at the start
            total_bytes: Size of the file, used for progress
            content_type: MIME type
            on_progress: Called with (bytes_uploaded, total_bytes)

        Returns:
            Object path as ``bucket/key``
        """
        config = TransferConfig(
            multipart_threshold=RESUMABLE_PART_SIZE,
            multipart_chunksize=RESUMABLE_PART_SIZE,
            max_concurrency=4,
        )
        uploaded = 0
        lock = threading.Lock()

        def _callback(bytes_amount: int) -> None:
            nonlocal uploaded
            with lock:
                uploaded += bytes_amount
                current = uploaded
            if on_progress:
                on_progress(current, total_bytes)

        self._client.upload_fileobj(
            fileobj,
            bucket,
            key,
            ExtraArgs={"ContentType": content_type, "CacheControl": "max-age=3600"},
            Config=config,
            Callback=_callback,
        )
        return f"{bucket}/{key}"

    def download_file(self, bucket: str, key: str) -> bytes:
        """Download a file from storage.

        Args:
            bucket: Source bucket
            key: Object key

        Returns:
            File content as bytes
        """
        buffer = BytesIO()
        self._client.download_fileobj(bucket, key, buffer)
        buffer.seek(0)
        return buffer.read()

    def file_exists(self, bucket: str, key: str) -> bool:
        """Check if a file exists in storage."""
        try:
            self._client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey"):
                return False
            raise

    def delete_file(self, bucket: str, key: str) -> None:
        """Delete a file from storage."""
        self._client.delete_object(Bucket=bucket, Key=key)

    def delete_files(self, bucket: str, keys: list[str]) -> int:
        """Delete several objects in one request.

        Returns:
            Number of keys submitted for deletion
        """
        if not keys:
            return 0
        self._client.delete_objects(
            Bucket=bucket,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
        )
        return len(keys)

    def list_files(self, bucket: str, prefix: str = "", max_keys: int = 1000) -> list[str]:
        """List object keys in a bucket with a given prefix."""
        response = self._client.list_objects_v2(
            Bucket=bucket,
            Prefix=prefix,
            MaxKeys=max_keys,
        )
        return [obj["Key"] for obj in response.get("Contents", [])]

    def generate_presigned_url(
        self,
        bucket: str,
        key: str,
        expiration: int = SIGNED_URL_TTL,
        method: str = "get_object",
        download_name: str | None = None,
    ) -> str:
        """Generate a presigned URL for temporary access.

        Args:
            bucket: Bucket holding the object
            key: Object key
            expiration: URL expiration time in seconds
            method: S3 operation ('get_object' or 'put_object')
            download_name: Suggested file name for the browser download

        Returns:
            Presigned URL
        """
        params = {"Bucket": bucket, "Key": key}
        if download_name and method == "get_object":
            params["ResponseContentDisposition"] = f'attachment; filename="{download_name}"'
        return self._client.generate_presigned_url(
            method,
            Params=params,
            ExpiresIn=expiration,
        )


def compute_content_hash(data: bytes) -> str:
    """Compute SHA-256 hash of content.

    Args:
        data: Content to hash

    Returns:
        Hex-encoded SHA-256 hash
    """
    return hashlib.sha256(data).hexdigest()


class TransferMeter:
    """Turns raw byte counts into upload progress with speed and ETA."""

    def __init__(self, total_bytes: int, clock: Callable[[], float] = time.monotonic):
        self.total_bytes = total_bytes
        self._clock = clock
        self._started = clock()

    def measure(self, uploaded_bytes: int) -> dict[str, float | int | None]:
        elapsed = max(self._clock() - self._started, 1e-6)
        speed_bps = uploaded_bytes / elapsed
        remaining = max(self.total_bytes - uploaded_bytes, 0)
        eta = None
        if speed_bps > 0:
            eta = -(-remaining // speed_bps)  # ceil
        mb = 1024 * 1024
        return {
            "percentage": round(uploaded_bytes / self.total_bytes * 100) if self.total_bytes else 100,
            "uploaded_mb": round(uploaded_bytes / mb, 2),
            "total_mb": round(self.total_bytes / mb, 2),
            "speed_mbps": round(speed_bps / mb, 1),
            "eta_seconds": int(eta) if eta is not None else None,
        }


# Singleton instance
_storage_client: StorageClient | None = None


def get_storage() -> StorageClient:
    """Get the storage client singleton."""
    global _storage_client
    if _storage_client is None:
        _storage_client = StorageClient()
    return _storage_client
