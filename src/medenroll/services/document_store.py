"""
Document Store
Encrypted, content-addressed blob storage for uploaded documents.
Source: https://min.io/docs/minio/linux/developers/python/minio-py.html
Verified: 2026-10-19

Handles are opaque: ``doc_<hmac>`` where the HMAC is keyed with the store's
encryption key, so the handle reveals nothing about the content. Storing the
same bytes twice yields the same handle. Blobs are encrypted with
AES-256-GCM before they reach the backend.
"""

from abc import ABC, abstractmethod
from io import BytesIO
from typing import Optional

from anyio import to_thread
from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from medenroll.core.config import EnrollmentSettings, get_settings
from medenroll.core.enums import StorageBackend
from medenroll.core.errors import NotFound, StorageError
from medenroll.services.retry import BackoffPolicy, with_retry
from medenroll.services.security.encryption import EncryptedField, EncryptionService
from medenroll.utils.logging import get_logger

logger = get_logger(__name__)

HANDLE_PREFIX = "doc_"

# Reads are retried briefly; a failed write surfaces to the uploader
_READ_RETRY = BackoffPolicy(max_attempts=3, base_delay_seconds=0.2, factor=2.0, cap_seconds=1.0)


class BlobBackend(ABC):
    """Raw byte storage keyed by handle."""

    @abstractmethod
    async def put_bytes(self, key: str, data: bytes) -> None: ...

    @abstractmethod
    async def get_bytes(self, key: str) -> Optional[bytes]:
        """Stored bytes, or None if the key is unknown."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...


class InMemoryBlobBackend(BlobBackend):
    """Process-local backend for development and tests."""

    def __init__(self):
        self._blobs: dict[str, bytes] = {}

    async def put_bytes(self, key: str, data: bytes) -> None:
        self._blobs[key] = data

    async def get_bytes(self, key: str) -> Optional[bytes]:
        return self._blobs.get(key)

    async def exists(self, key: str) -> bool:
        return key in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


class MinioBlobBackend(BlobBackend):
    """S3-compatible backend; blocking client calls run in a worker thread."""

    def __init__(self, settings: Optional[EnrollmentSettings] = None, client: Optional[Minio] = None):
        settings = settings or get_settings()
        self.bucket = settings.MINIO_BUCKET
        self.client = client or Minio(
            settings.MINIO_ENDPOINT,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=settings.MINIO_SECURE,
        )
        self._bucket_ready = False
        logger.info(f"MinIO document backend initialized: {settings.MINIO_ENDPOINT}/{self.bucket}")

    async def put_bytes(self, key: str, data: bytes) -> None:
        try:
            await to_thread.run_sync(self._put_sync, key, data)
        except (S3Error, Urllib3HTTPError) as e:
            logger.error(f"Error storing object {key}: {e}")
            raise StorageError(f"Could not store document: {e}") from e

    @with_retry(_READ_RETRY, exceptions=(StorageError,))
    async def get_bytes(self, key: str) -> Optional[bytes]:
        try:
            return await to_thread.run_sync(self._get_sync, key)
        except (S3Error, Urllib3HTTPError) as e:
            logger.error(f"Error reading object {key}: {e}")
            raise StorageError(f"Could not read document: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            return await to_thread.run_sync(self._exists_sync, key)
        except (S3Error, Urllib3HTTPError) as e:
            raise StorageError(f"Could not stat document: {e}") from e

    # ------------------------------------------------------------------
    # Blocking helpers (run via anyio.to_thread)
    # ------------------------------------------------------------------

    def _ensure_bucket_sync(self) -> None:
        if self._bucket_ready:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
            logger.info(f"Created bucket: {self.bucket}")
        self._bucket_ready = True

    def _put_sync(self, key: str, data: bytes) -> None:
        self._ensure_bucket_sync()
        self.client.put_object(
            self.bucket,
            key,
            BytesIO(data),
            len(data),
            content_type="application/octet-stream",
        )

    def _get_sync(self, key: str) -> Optional[bytes]:
        try:
            response = self.client.get_object(self.bucket, key)
        except S3Error as e:
            if e.code == "NoSuchKey":
                return None
            raise
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def _exists_sync(self, key: str) -> bool:
        try:
            self.client.stat_object(self.bucket, key)
            return True
        except S3Error as e:
            if e.code == "NoSuchKey":
                return False
            raise


class DocumentStore:
    """Encrypting, content-addressed facade over a blob backend."""

    def __init__(self, backend: Optional[BlobBackend] = None, encryption: Optional[EncryptionService] = None):
        self.backend = backend if backend is not None else InMemoryBlobBackend()
        self.encryption = encryption or EncryptionService()

    def handle_for(self, content: bytes) -> str:
        return f"{HANDLE_PREFIX}{self.encryption.keyed_digest(content)}"

    async def put(self, content: bytes) -> str:
        """Store content and return its opaque handle.

        Raises:
            StorageError: If the backend cannot persist the blob
        """
        handle = self.handle_for(content)
        if await self.backend.exists(handle):
            return handle

        encrypted = self.encryption.encrypt(content)
        await self.backend.put_bytes(handle, encrypted.to_bytes())
        logger.debug(f"Stored document blob {handle[:16]}... ({len(content)} bytes)")
        return handle

    async def contains(self, handle: str) -> bool:
        """Raises StorageError if the backend cannot answer."""
        return await self.backend.exists(handle)

    async def get(self, handle: str) -> bytes:
        """Return the plaintext stored under handle.

        Raises:
            NotFound: If no blob exists for the handle
            StorageError: If the backend fails or the blob fails authentication
        """
        data = await self.backend.get_bytes(handle)
        if data is None:
            raise NotFound("document_blob", handle)

        try:
            return self.encryption.decrypt(EncryptedField.from_bytes(data))
        except ValueError as e:
            logger.error(f"Document blob {handle[:16]}... failed integrity check")
            raise StorageError("Stored document failed integrity check", error_code="integrity_failure") from e


def create_document_store(settings: Optional[EnrollmentSettings] = None) -> DocumentStore:
    """Build the document store configured by settings."""
    settings = settings or get_settings()
    encryption = EncryptionService.from_base64_key(settings.STORAGE_ENCRYPTION_KEY)
    if settings.STORAGE_BACKEND == StorageBackend.MINIO:
        backend: BlobBackend = MinioBlobBackend(settings)
    else:
        backend = InMemoryBlobBackend()
    return DocumentStore(backend, encryption)
