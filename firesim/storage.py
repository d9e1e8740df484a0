import logging
import time
from datetime import timedelta
from io import BytesIO
from typing import Dict, Optional, Protocol

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from .config import (
    MINIO_ACCESS_KEY,
    MINIO_BUCKET,
    MINIO_ENDPOINT,
    MINIO_SECRET_KEY,
    MINIO_SECURE,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when an artifact cannot be written or read."""


class ArtifactStore(Protocol):
    def upload(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        ...

    def mint_access_url(self, locator: str, ttl: timedelta) -> str:
        ...

    def load(self, key: str) -> Optional[bytes]:
        ...


def image_key(run_id: str, index: int, viewpoint: str) -> str:
    return f"{run_id}/{index:02d}-{viewpoint}.png"


def progress_key(run_id: str) -> str:
    return f"progress/{run_id}.json"


def metadata_key(run_id: str) -> str:
    return f"scenario-data/{run_id}/metadata.json"


def generation_log_key(run_id: str) -> str:
    return f"{run_id}/generation-log.md"


class MinioStorage:
    """
    MinIO artifact store for generated images, progress snapshots and run reports.

    The bucket is private; callers hand out time-limited presigned URLs.
    """

    def __init__(
        self,
        endpoint: str = MINIO_ENDPOINT,
        access_key: str = MINIO_ACCESS_KEY,
        secret_key: str = MINIO_SECRET_KEY,
        bucket: str = MINIO_BUCKET,
        secure: bool = MINIO_SECURE,
    ):
        self.endpoint = endpoint
        self.access_key = access_key
        self.secret_key = secret_key
        self.bucket = bucket
        self.secure = secure

        self.client: Optional[Minio] = None
        self._initialized = False

    def _ensure_initialized(self) -> Minio:
        """Lazily initialize the MinIO client and bucket."""
        if self._initialized and self.client is not None:
            return self.client

        client = Minio(
            self.endpoint,
            access_key=self.access_key,
            secret_key=self.secret_key,
            secure=self.secure,
        )

        # Wait for MinIO to be available
        for attempt in range(10):
            try:
                if not client.bucket_exists(self.bucket):
                    client.make_bucket(self.bucket)
                    logger.info(f"[storage] Created bucket: {self.bucket}")
                break
            except (S3Error, HTTPError) as e:
                if attempt == 9:
                    raise StorageError(f"MinIO bucket {self.bucket} unavailable: {e}") from e
                logger.warning(f"[storage] Waiting for MinIO... ({e})")
                time.sleep(2)

        self.client = client
        self._initialized = True
        logger.info(f"[storage] MinIO initialized: {self.endpoint}/{self.bucket}")
        return client

    def upload(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Upload an artifact and return its locator (the object key).

        Args:
            key: Object key inside the bucket
            data: Raw bytes
            content_type: MIME type stored with the object
            metadata: Optional user metadata

        Returns:
            Locator accepted by mint_access_url
        """
        client = self._ensure_initialized()
        try:
            client.put_object(
                self.bucket,
                key,
                BytesIO(data),
                length=len(data),
                content_type=content_type,
                metadata=metadata or None,
            )
        except S3Error as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e

        logger.debug(f"[storage] Uploaded {key} ({len(data)} bytes)")
        return key

    def mint_access_url(self, locator: str, ttl: timedelta) -> str:
        client = self._ensure_initialized()
        try:
            return client.presigned_get_object(self.bucket, locator, expires=ttl)
        except S3Error as e:
            raise StorageError(f"Failed to sign URL for {locator}: {e}") from e

    def load(self, key: str) -> Optional[bytes]:
        """Read an artifact back; a missing object is None."""
        client = self._ensure_initialized()
        response = None
        try:
            response = client.get_object(self.bucket, key)
            return response.read()
        except S3Error as e:
            if e.code == "NoSuchKey":
                return None
            raise StorageError(f"Failed to read {key}: {e}") from e
        finally:
            if response is not None:
                response.close()
                response.release_conn()
