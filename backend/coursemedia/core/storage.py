"""Universal storage module supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Objects are addressed by logical keys such as ``videos/originals/a.mp4``.
"""

import asyncio
import io
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Iterator, Optional

from coursemedia.core.config import settings
from coursemedia.core.exceptions import NotFound, StorageError

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    key: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range ``start..end``."""
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def write(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Write bytes to storage."""

    @abstractmethod
    def write_file(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Copy a local file into storage."""

    @abstractmethod
    def write_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Write a file object to storage."""

    @abstractmethod
    def read(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        """Read a whole object or an inclusive byte range of it."""

    @abstractmethod
    def iter_range(
        self,
        key: str,
        start: int,
        end: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> Iterator[bytes]:
        """Yield chunks of ``start..end`` (inclusive).

        Closing the iterator releases the underlying handle.
        """

    @abstractmethod
    def size(self, key: str) -> int:
        """Return object size in bytes."""

    @abstractmethod
    def download(self, key: str, destination: str) -> bool:
        """Download an object to a local path."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete an object from storage."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists in storage."""

    def local_path(self, key: str) -> Optional[str]:
        """Local filesystem path of an object, when the backend has one."""
        return None


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        """Get full path for a key, refusing keys that escape the base path."""
        path = (self.base_path / key).resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def write(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        return self.write_fileobj(io.BytesIO(data), key, content_type)

    def write_file(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Copy a local file into local storage."""
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            shutil.copyfile(file_path, dest_path)
            return StorageResult(
                success=True,
                key=key,
                file_size=dest_path.stat().st_size,
            )
        except (OSError, StorageError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def write_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Write a file object to local storage."""
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with open(dest_path, "wb") as f:
                shutil.copyfileobj(fileobj, f)

            return StorageResult(
                success=True,
                key=key,
                file_size=dest_path.stat().st_size,
            )
        except (OSError, StorageError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def read(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        path = self._get_full_path(key)
        try:
            with open(path, "rb") as f:
                if byte_range is None:
                    return f.read()
                f.seek(byte_range.start)
                return f.read(byte_range.length)
        except FileNotFoundError:
            raise NotFound(f"Object not found: {key}")
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e.strerror}")

    def iter_range(
        self,
        key: str,
        start: int,
        end: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> Iterator[bytes]:
        path = self._get_full_path(key)
        if not path.is_file():
            raise NotFound(f"Object not found: {key}")
        return self._iter_file(path, start, end, chunk_size)

    @staticmethod
    def _iter_file(path: Path, start: int, end: int, chunk_size: int) -> Iterator[bytes]:
        # Opened on first iteration so an unstarted iterator holds no handle.
        with open(path, "rb") as f:
            f.seek(start)
            remaining = end - start + 1
            while remaining > 0:
                chunk = f.read(min(chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk

    def size(self, key: str) -> int:
        try:
            return self._get_full_path(key).stat().st_size
        except FileNotFoundError:
            raise NotFound(f"Object not found: {key}")

    def download(self, key: str, destination: str) -> bool:
        """Copy an object out of local storage."""
        try:
            src_path = self._get_full_path(key)
            if src_path.exists():
                shutil.copyfile(src_path, destination)
                return True
            return False
        except (OSError, StorageError):
            return False

    def delete(self, key: str) -> bool:
        """Delete a file from local storage."""
        try:
            file_path = self._get_full_path(key)
            if file_path.exists():
                file_path.unlink()
                return True
            return False
        except (OSError, StorageError):
            return False

    def exists(self, key: str) -> bool:
        try:
            return self._get_full_path(key).is_file()
        except StorageError:
            return False

    def local_path(self, key: str) -> Optional[str]:
        return str(self._get_full_path(key))


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key,
                "aws_secret_access_key": self.config.secret_key,
            }

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )

            if not self.config.use_ssl and self.config.endpoint_url:
                # Allow non-SSL for local MinIO
                client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    @staticmethod
    def _is_missing(error) -> bool:
        code = error.response.get("Error", {}).get("Code", "")
        return code in ("404", "NoSuchKey", "NotFound")

    def write(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        return self.write_fileobj(io.BytesIO(data), key, content_type)

    def write_file(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        with open(file_path, "rb") as f:
            return self.write_fileobj(f, key, content_type)

    def write_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file object to S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            client = self._get_client()

            fileobj.seek(0, 2)
            file_size = fileobj.tell()
            fileobj.seek(0)

            response = client.put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=fileobj,
                ContentType=content_type,
            )

            return StorageResult(
                success=True,
                key=key,
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def _get_object(self, key: str, byte_range: Optional[ByteRange] = None) -> dict:
        from botocore.exceptions import BotoCoreError, ClientError

        params = {"Bucket": self.config.bucket, "Key": key}
        if byte_range is not None:
            params["Range"] = f"bytes={byte_range.start}-{byte_range.end}"
        try:
            return self._get_client().get_object(**params)
        except ClientError as e:
            if self._is_missing(e):
                raise NotFound(f"Object not found: {key}")
            raise StorageError(f"Failed to read {key}")
        except BotoCoreError:
            raise StorageError(f"Failed to read {key}")

    def read(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        body = self._get_object(key, byte_range)["Body"]
        try:
            return body.read()
        finally:
            body.close()

    def iter_range(
        self,
        key: str,
        start: int,
        end: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> Iterator[bytes]:
        return self._iter_body(key, ByteRange(start, end), chunk_size)

    def _iter_body(self, key: str, byte_range: ByteRange, chunk_size: int) -> Iterator[bytes]:
        body = self._get_object(key, byte_range)["Body"]
        try:
            yield from body.iter_chunks(chunk_size)
        finally:
            body.close()

    def size(self, key: str) -> int:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            head = self._get_client().head_object(Bucket=self.config.bucket, Key=key)
        except ClientError as e:
            if self._is_missing(e):
                raise NotFound(f"Object not found: {key}")
            raise StorageError(f"Failed to stat {key}")
        except BotoCoreError:
            raise StorageError(f"Failed to stat {key}")
        return int(head["ContentLength"])

    def download(self, key: str, destination: str) -> bool:
        """Download a file from S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().download_file(self.config.bucket, key, destination)
            return True
        except (BotoCoreError, ClientError):
            return False

    def delete(self, key: str) -> bool:
        """Delete a file from S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().delete_object(Bucket=self.config.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError):
            return False

    def exists(self, key: str) -> bool:
        """Check if a file exists in S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError):
            return False


def create_backend(config: StorageConfig) -> StorageBackend:
    """Create appropriate storage backend."""
    backend_type = config.backend.lower()

    if backend_type == "local":
        return LocalStorage(config)
    elif backend_type in ("s3", "minio", "aws"):
        return S3Storage(config)
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")


def storage_config_from_settings() -> StorageConfig:
    return StorageConfig(
        backend=settings.STORAGE_BACKEND,
        bucket=settings.STORAGE_BUCKET,
        region=settings.STORAGE_REGION,
        access_key=settings.STORAGE_ACCESS_KEY,
        secret_key=settings.STORAGE_SECRET_KEY,
        endpoint_url=settings.STORAGE_ENDPOINT_URL,
        use_ssl=settings.STORAGE_USE_SSL,
        local_path=settings.LOCAL_STORAGE_PATH,
    )


def generate_key(prefix: str, filename: str, include_date: bool = False) -> str:
    """Generate a storage key.

    Args:
        prefix: Key prefix (e.g., "videos/originals")
        filename: Stored filename
        include_date: Include date in path

    Returns:
        Generated key
    """
    if include_date:
        date_prefix = datetime.utcnow().strftime("%Y/%m/%d")
        return f"{prefix}/{date_prefix}/{filename}"
    return f"{prefix}/{filename}"


class StorageService:
    """Async-compatible storage service wrapper.

    Blocking backend calls run in a worker thread so request handlers and
    queue workers keep the event loop free.
    """

    def __init__(self, backend: StorageBackend):
        self.backend = backend

    @classmethod
    def from_settings(cls) -> "StorageService":
        return cls(create_backend(storage_config_from_settings()))

    async def save(
        self,
        key: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Write bytes, raising StorageError on failure."""
        result = await asyncio.to_thread(self.backend.write, key, content, content_type)
        return self._check(result)

    async def save_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        result = await asyncio.to_thread(
            self.backend.write_fileobj, fileobj, key, content_type
        )
        return self._check(result)

    async def save_file(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        result = await asyncio.to_thread(
            self.backend.write_file, file_path, key, content_type
        )
        return self._check(result)

    async def read(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        return await asyncio.to_thread(self.backend.read, key, byte_range)

    async def size(self, key: str) -> int:
        return await asyncio.to_thread(self.backend.size, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.backend.exists, key)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self.backend.delete, key)

    async def download(self, key: str, destination: str) -> bool:
        return await asyncio.to_thread(self.backend.download, key, destination)

    def local_path(self, key: str) -> Optional[str]:
        return self.backend.local_path(key)

    async def open_range(
        self,
        key: str,
        start: int,
        end: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> AsyncIterator[bytes]:
        """Stream ``start..end`` as an async iterator.

        The backend handle is opened on the first iteration and released when
        the iterator finishes or is closed (client disconnect).
        """
        chunks = await asyncio.to_thread(
            self.backend.iter_range, key, start, end, chunk_size
        )
        try:
            while True:
                chunk = await asyncio.to_thread(next, chunks, None)
                if chunk is None:
                    break
                yield chunk
        finally:
            chunks.close()

    @staticmethod
    def _check(result: StorageResult) -> StorageResult:
        if not result.success:
            raise StorageError(f"Failed to write {result.key}: {result.error_message}")
        return result
