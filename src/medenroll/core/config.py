"""
Enrollment Platform Configuration
Environment-based settings for the enrollment orchestrator.
Source: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
Verified: 2026-10-19
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from medenroll.core.enums import DocumentType, ExtractionProvider, StorageBackend


class EnrollmentSettings(BaseSettings):
    """
    Enrollment orchestrator settings.

    Every value can be overridden through an ``ENROLLMENT_``-prefixed
    environment variable or the ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="ENROLLMENT_",
    )

    # =========================================================================
    # Application
    # =========================================================================
    ENVIRONMENT: Literal["development", "staging", "production", "testing"] = Field(
        default="development",
        description="Deployment environment",
    )
    DEBUG: bool = Field(default=False, description="Debug mode (never in production)")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: bool = Field(default=False, description="Serialize log lines as JSON")
    LOG_FILE: Optional[str] = Field(default=None, description="Optional log file path")

    # =========================================================================
    # Document Verification
    # =========================================================================
    CONFIDENCE_THRESHOLD: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Minimum extraction confidence for a document to be VERIFIED",
    )
    MAX_DOCUMENT_BYTES: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Largest accepted upload in bytes",
    )
    ALLOWED_CONTENT_TYPES: list[str] = Field(
        default=["application/pdf", "image/jpeg", "image/png"],
        description="Accepted upload content types",
    )
    REQUIRED_DOCUMENT_TYPES: list[DocumentType] = Field(
        default=[DocumentType.ID, DocumentType.PROOF_OF_ADDRESS],
        description="Document types that must be VERIFIED before the case advances",
    )

    # =========================================================================
    # Extraction Provider
    # =========================================================================
    EXTRACTION_PROVIDER: ExtractionProvider = Field(
        default=ExtractionProvider.HTTP,
        description="Extraction provider",
    )
    EXTRACTION_SERVICE_URL: str = Field(
        default="http://localhost:9091",
        description="Base URL of the OCR/extraction service",
    )
    EXTRACTION_API_KEY: Optional[str] = Field(
        default=None,
        description="API key sent to the extraction service",
    )
    EXTRACTION_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    EXTRACTION_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    EXTRACTION_BACKOFF_BASE_SECONDS: float = Field(default=1.0, ge=0)
    EXTRACTION_BACKOFF_FACTOR: float = Field(default=2.0, ge=1.0)
    EXTRACTION_BACKOFF_CAP_SECONDS: float = Field(default=30.0, ge=0)
    EXTRACTION_CIRCUIT_BREAKER_THRESHOLD: int = Field(default=5, ge=1)
    EXTRACTION_CIRCUIT_BREAKER_TIMEOUT_SECONDS: float = Field(default=300.0, ge=0)
    PROCESSING_LEASE_SECONDS: float = Field(
        default=300.0,
        gt=0,
        description="How long a PROCESSING claim blocks other workers before it may be taken over",
    )

    # =========================================================================
    # Notifications
    # =========================================================================
    NOTIFICATION_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    NOTIFICATION_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    NOTIFICATION_BACKOFF_BASE_SECONDS: float = Field(default=300.0, ge=0)
    NOTIFICATION_BACKOFF_FACTOR: float = Field(default=2.0, ge=1.0)
    NOTIFICATION_BACKOFF_CAP_SECONDS: float = Field(default=1800.0, ge=0)
    NOTIFICATION_CIRCUIT_BREAKER_THRESHOLD: int = Field(default=5, ge=1)
    NOTIFICATION_CIRCUIT_BREAKER_TIMEOUT_SECONDS: float = Field(default=300.0, ge=0)

    # =========================================================================
    # Document Store
    # =========================================================================
    STORAGE_BACKEND: StorageBackend = Field(default=StorageBackend.MEMORY)
    STORAGE_ENCRYPTION_KEY: Optional[str] = Field(
        default=None,
        description="Base64-encoded 32-byte key; a random key is generated when unset",
    )
    MINIO_ENDPOINT: str = Field(default="minio:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_SECURE: bool = Field(default=False)
    MINIO_BUCKET: str = Field(default="enrollment-documents")

    # =========================================================================
    # Database
    # =========================================================================
    DATABASE_URL: Optional[str] = Field(
        default=None,
        description="Async SQLAlchemy URL; the in-memory repository is used when unset",
    )
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("REQUIRED_DOCUMENT_TYPES")
    @classmethod
    def validate_required_types(cls, v: list[DocumentType]) -> list[DocumentType]:
        """At least one document type must be required, without duplicates."""
        if not v:
            raise ValueError("At least one required document type must be configured")
        return list(dict.fromkeys(v))

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_testing(self) -> bool:
        return self.ENVIRONMENT == "testing"


@lru_cache
def get_settings() -> EnrollmentSettings:
    """Get cached settings instance."""
    return EnrollmentSettings()
