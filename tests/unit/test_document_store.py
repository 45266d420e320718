"""
Document store and encryption tests.
"""

import hashlib

import pytest

from fakes import PDF_BYTES, PNG_BYTES
from medenroll.core.errors import NotFound, StorageError
from medenroll.services.document_store import DocumentStore, InMemoryBlobBackend
from medenroll.services.security.encryption import EncryptedField, EncryptionService


@pytest.mark.unit
class TestEncryptionService:
    """AES-256-GCM at rest."""

    def test_decrypts_what_it_encrypts(self):
        service = EncryptionService()

        encrypted = service.encrypt(PDF_BYTES)

        assert service.decrypt(encrypted) == PDF_BYTES

    def test_fresh_iv_per_encryption(self):
        service = EncryptionService()

        first = service.encrypt(b"same bytes")
        second = service.encrypt(b"same bytes")

        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    def test_tampered_ciphertext_is_rejected(self):
        service = EncryptionService()
        encrypted = service.encrypt(b"payload")
        other = service.encrypt(b"different payload")
        tampered = encrypted.model_copy(update={"ciphertext": other.ciphertext})

        with pytest.raises(ValueError):
            service.decrypt(tampered)

    def test_wrong_key_is_rejected(self):
        encrypted = EncryptionService().encrypt(b"payload")

        with pytest.raises(ValueError):
            EncryptionService().decrypt(encrypted)

    def test_raw_key_length_is_enforced(self):
        with pytest.raises(ValueError):
            EncryptionService(b"too-short")

    def test_password_key_uses_salt(self):
        service = EncryptionService("correct horse battery staple")

        encrypted = service.encrypt("text")

        assert encrypted.salt is not None
        assert service.decrypt(encrypted) == b"text"

    def test_storage_string_round_trip(self):
        service = EncryptionService()
        encrypted = service.encrypt(b"payload", key_id="k1")

        restored = EncryptedField.from_bytes(encrypted.to_bytes())

        assert restored.key_id == "k1"
        assert service.decrypt(restored) == b"payload"

    def test_from_base64_key(self):
        key = EncryptionService().generate_key()

        first = EncryptionService.from_base64_key(key)
        second = EncryptionService.from_base64_key(key)

        assert second.decrypt(first.encrypt(b"shared")) == b"shared"


@pytest.mark.unit
class TestDocumentStore:
    """Content-addressed, encrypted blob store."""

    @pytest.mark.asyncio
    async def test_put_is_idempotent(self):
        backend = InMemoryBlobBackend()
        store = DocumentStore(backend)

        first = await store.put(PDF_BYTES)
        second = await store.put(PDF_BYTES)

        assert first == second
        assert first.startswith("doc_")
        assert len(backend) == 1

    @pytest.mark.asyncio
    async def test_distinct_content_distinct_handles(self):
        store = DocumentStore()

        assert await store.put(PDF_BYTES) != await store.put(PNG_BYTES)

    @pytest.mark.asyncio
    async def test_blob_is_encrypted_at_rest(self):
        backend = InMemoryBlobBackend()
        store = DocumentStore(backend)

        handle = await store.put(PDF_BYTES)

        raw = await backend.get_bytes(handle)
        assert PDF_BYTES not in raw
        assert await store.get(handle) == PDF_BYTES

    @pytest.mark.asyncio
    async def test_handle_does_not_reveal_content_digest(self):
        store = DocumentStore()

        handle = await store.put(PDF_BYTES)

        assert handle != "doc_" + hashlib.sha256(PDF_BYTES).hexdigest()

    @pytest.mark.asyncio
    async def test_unknown_handle(self):
        with pytest.raises(NotFound):
            await DocumentStore().get("doc_missing")

    @pytest.mark.asyncio
    async def test_corrupted_blob_fails_integrity_check(self):
        backend = InMemoryBlobBackend()
        store = DocumentStore(backend)
        handle = await store.put(PDF_BYTES)
        await backend.put_bytes(handle, EncryptionService().encrypt(PDF_BYTES).to_bytes())

        with pytest.raises(StorageError) as exc_info:
            await store.get(handle)

        assert exc_info.value.error_code == "integrity_failure"

    @pytest.mark.asyncio
    async def test_contains(self):
        backend = InMemoryBlobBackend()
        store = DocumentStore(backend)
        handle = await store.put(PDF_BYTES)

        assert await store.contains(handle)
        assert not await store.contains(store.handle_for(PNG_BYTES))
        assert len(backend) == 1
