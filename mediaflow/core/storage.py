"""Object store adapter supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Backends are synchronous and report failures through StorageResult; the
async ObjectStore wrapper runs them off the event loop and retries failed
operations with exponential backoff.
"""

import asyncio
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig

from mediaflow.core.config import settings
from mediaflow.core.retry import RETRY_CONFIGS, RetryConfig, retry_async

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when an object-store operation fails."""


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    key: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio, aws
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"

    @classmethod
    def from_settings(cls) -> "StorageConfig":
        return cls(
            backend=settings.STORAGE_BACKEND,
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            use_ssl=settings.STORAGE_USE_SSL,
            local_path=settings.LOCAL_STORAGE_PATH,
        )


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a local file under key."""
        pass

    @abstractmethod
    def upload_bytes(
        self,
        content: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload in-memory content under key."""
        pass

    @abstractmethod
    def download(self, key: str, destination: str) -> StorageResult:
        """Download key to a local path."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a key exists."""
        pass


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        return self.base_path / key

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(file_path, dest_path)
            return StorageResult(success=True, key=key, file_size=dest_path.stat().st_size)
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def upload_bytes(
        self,
        content: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(content)
            return StorageResult(success=True, key=key, file_size=len(content))
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def download(self, key: str, destination: str) -> StorageResult:
        source_path = self._get_full_path(key)
        if not source_path.exists():
            return StorageResult(success=False, key=key, error_message=f"Object not found: {key}")
        try:
            Path(destination).parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source_path, destination)
            return StorageResult(success=True, key=key, file_size=source_path.stat().st_size)
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def exists(self, key: str) -> bool:
        return self._get_full_path(key).exists()


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        if self._client is None:
            client_kwargs = {
                "service_name": "s3",
                "aws_access_key_id": self.config.access_key or None,
                "aws_secret_access_key": self.config.secret_key or None,
                "region_name": self.config.region or None,
            }

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            client = self._get_client()
            file_size = os.path.getsize(file_path)
            with open(file_path, "rb") as f:
                response = client.put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=f,
                    ContentType=content_type,
                )
            return StorageResult(
                success=True,
                key=key,
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except Exception as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def upload_bytes(
        self,
        content: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            response = self._get_client().put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
            return StorageResult(
                success=True,
                key=key,
                file_size=len(content),
                etag=response.get("ETag", "").strip('"'),
            )
        except Exception as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def download(self, key: str, destination: str) -> StorageResult:
        try:
            Path(destination).parent.mkdir(parents=True, exist_ok=True)
            self._get_client().download_file(self.config.bucket, key, destination)
            return StorageResult(success=True, key=key, file_size=os.path.getsize(destination))
        except Exception as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except Exception:
            return False


def create_storage_backend(config: Optional[StorageConfig] = None) -> StorageBackend:
    """Create the storage backend selected by configuration."""
    config = config or StorageConfig.from_settings()
    backend_type = config.backend.lower()

    if backend_type == "local":
        return LocalStorage(config)
    elif backend_type in ("s3", "minio", "aws"):
        return S3Storage(config)
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")


class ObjectStore:
    """Async object store adapter with bounded retries.

    Every call runs the blocking backend in a thread and retries failures
    with exponential backoff; exhausting the retries raises RetryExhaustedError.
    """

    def __init__(
        self,
        backend: Optional[StorageBackend] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self._backend = backend or create_storage_backend()
        self._retry_config = retry_config or RETRY_CONFIGS["storage"]

    async def _run(self, operation: str, func, *args) -> StorageResult:
        async def attempt() -> StorageResult:
            result = await asyncio.to_thread(func, *args)
            if not result.success:
                raise StorageError(f"{operation} {result.key}: {result.error_message}")
            return result

        return await retry_async(
            attempt,
            config=self._retry_config,
            retry_on=(StorageError, OSError),
            operation=operation,
        )

    async def download(self, key: str, destination: str) -> StorageResult:
        """Download an object to a local file."""
        return await self._run("download", self._backend.download, key, destination)

    async def upload_file(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a local file."""
        return await self._run("upload", self._backend.upload, file_path, key, content_type)

    async def upload_bytes(
        self,
        content: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload in-memory content such as a manifest."""
        return await self._run("upload", self._backend.upload_bytes, content, key, content_type)
