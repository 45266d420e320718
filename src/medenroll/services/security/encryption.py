"""
Encryption Service.
Source: https://cryptography.io/en/latest/hazmat/primitives/aead/
Verified: 2026-10-19

Provides AES-256-GCM encryption for documents at rest.
"""

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, Field


class EncryptionAlgorithm(str, Enum):
    """Supported encryption algorithms."""

    AES_256_GCM = "aes-256-gcm"


class EncryptionConfig(BaseModel):
    """Encryption configuration."""

    algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_GCM
    key_length: int = 32  # 256 bits
    iv_length: int = 12  # 96 bits for GCM
    pbkdf2_iterations: int = 100000
    salt_length: int = 16


class EncryptedField(BaseModel):
    """Encrypted blob wrapper (GCM tag is appended to the ciphertext)."""

    ciphertext: str  # Base64 encoded
    iv: str  # Base64 encoded
    salt: Optional[str] = None  # Base64 encoded (for key derivation)
    algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_GCM
    key_id: Optional[str] = None
    encrypted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_string(self) -> str:
        """Serialize to storage string."""
        parts = [self.algorithm.value, self.key_id or "", self.iv, self.ciphertext]
        if self.salt:
            parts.append(self.salt)
        return "$".join(parts)

    @classmethod
    def from_string(cls, data: str) -> "EncryptedField":
        """Deserialize from storage string."""
        parts = data.split("$")
        if len(parts) < 4:
            raise ValueError("Invalid encrypted field format")

        return cls(
            algorithm=EncryptionAlgorithm(parts[0]),
            key_id=parts[1] or None,
            iv=parts[2],
            ciphertext=parts[3],
            salt=parts[4] if len(parts) > 4 else None,
        )

    def to_bytes(self) -> bytes:
        return self.to_string().encode("ascii")

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedField":
        return cls.from_string(data.decode("ascii"))


class EncryptionService:
    """Service for encrypting and decrypting data."""

    def __init__(
        self,
        master_key: str | bytes | None = None,
        config: EncryptionConfig | None = None,
    ):
        """Initialize EncryptionService.

        Args:
            master_key: Raw 32-byte key, or a password string for key derivation.
                A random key is generated when omitted.
            config: Encryption configuration
        """
        self._config = config or EncryptionConfig()
        self._master_key = self._process_key(master_key)

    @classmethod
    def from_base64_key(cls, encoded: str | None) -> "EncryptionService":
        """Build from a base64-encoded raw key (as stored in settings)."""
        if encoded is None:
            return cls()
        return cls(base64.b64decode(encoded))

    def _process_key(self, key: str | bytes | None) -> bytes:
        """Process and validate master key."""
        if key is None:
            return secrets.token_bytes(self._config.key_length)

        if isinstance(key, str):
            # Treat as password, key is derived per encryption
            return key.encode()

        if len(key) != self._config.key_length:
            raise ValueError(f"Key must be {self._config.key_length} bytes")

        return key

    @property
    def _uses_password(self) -> bool:
        return len(self._master_key) != self._config.key_length

    def _derive_key(self, password: bytes, salt: bytes) -> bytes:
        """Derive encryption key from password using PBKDF2."""
        return hashlib.pbkdf2_hmac(
            "sha256",
            password,
            salt,
            self._config.pbkdf2_iterations,
            dklen=self._config.key_length,
        )

    def encrypt(self, plaintext: str | bytes, key_id: str | None = None) -> EncryptedField:
        """Encrypt plaintext data.

        Args:
            plaintext: Data to encrypt
            key_id: Optional key identifier for key rotation

        Returns:
            EncryptedField containing encrypted data
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        iv = secrets.token_bytes(self._config.iv_length)

        if self._uses_password:
            salt = secrets.token_bytes(self._config.salt_length)
            key = self._derive_key(self._master_key, salt)
            salt_b64 = base64.b64encode(salt).decode()
        else:
            key = self._master_key
            salt_b64 = None

        ciphertext = AESGCM(key).encrypt(iv, plaintext, None)

        return EncryptedField(
            ciphertext=base64.b64encode(ciphertext).decode(),
            iv=base64.b64encode(iv).decode(),
            salt=salt_b64,
            algorithm=self._config.algorithm,
            key_id=key_id,
        )

    def decrypt(self, encrypted: EncryptedField) -> bytes:
        """Decrypt encrypted data.

        Raises:
            ValueError: If the authentication tag does not verify
        """
        ciphertext = base64.b64decode(encrypted.ciphertext)
        iv = base64.b64decode(encrypted.iv)

        if encrypted.salt:
            key = self._derive_key(self._master_key, base64.b64decode(encrypted.salt))
        else:
            key = self._master_key

        try:
            return AESGCM(key).decrypt(iv, ciphertext, None)
        except InvalidTag as e:
            raise ValueError("Authentication tag verification failed") from e

    def keyed_digest(self, data: bytes) -> str:
        """HMAC-SHA256 of data under the master key (content address that leaks nothing)."""
        return hmac.new(self._master_key, data, hashlib.sha256).hexdigest()

    def generate_key(self) -> str:
        """Generate a new random encryption key (base64)."""
        key = secrets.token_bytes(self._config.key_length)
        return base64.b64encode(key).decode()
