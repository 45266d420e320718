"""
Extraction Gateway.

Thin adapter over the external OCR/extraction service. The document bytes
are read from the document store by handle and posted to the service; the
structured answer is returned as an ``ExtractionResult``.

The service is treated as unreliable: every call has a hard timeout, no side
effects on failure, and is safe to repeat (handles are immutable, although a
probabilistic OCR may return a slightly different confidence on a retry).
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from medenroll.core.config import EnrollmentSettings, get_settings
from medenroll.core.enums import DocumentType, ExtractionProvider
from medenroll.gateways.base import (
    BaseGateway,
    GatewayConfig,
    GatewayError,
    GatewayResult,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from medenroll.schemas.enrollment import ExtractionResult

logger = logging.getLogger(__name__)


class BlobReader(Protocol):
    """The part of the document store the gateway needs."""

    async def get(self, handle: str) -> bytes: ...


@dataclass
class ExtractionRequest:
    """Request to extract structured fields from a stored document."""

    document_handle: str
    document_type: DocumentType


class ExtractionClient(Protocol):
    """Contract consumed by the document pipeline."""

    async def extract(
        self, document_handle: str, document_type: DocumentType
    ) -> GatewayResult[ExtractionResult]: ...


class ExtractionGateway(BaseGateway[ExtractionRequest, ExtractionResult, ExtractionProvider]):
    """
    Gateway to the HTTP extraction service.

    Features:
    - Hard timeout (default 10s) per call
    - Circuit breaker on consecutive failures
    - Error classification (timeout, unavailable, rate-limited, bad response)
    """

    def __init__(
        self,
        store: BlobReader,
        settings: Optional[EnrollmentSettings] = None,
        config: Optional[GatewayConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        if config is None:
            config = GatewayConfig(
                provider=settings.EXTRACTION_PROVIDER.value,
                timeout_seconds=settings.EXTRACTION_TIMEOUT_SECONDS,
                circuit_breaker_threshold=settings.EXTRACTION_CIRCUIT_BREAKER_THRESHOLD,
                circuit_breaker_timeout_seconds=settings.EXTRACTION_CIRCUIT_BREAKER_TIMEOUT_SECONDS,
            )

        super().__init__(config)
        self._settings = settings
        self._store = store
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def gateway_name(self) -> str:
        return "Extraction"

    def _parse_provider(self, provider_str: str) -> ExtractionProvider:
        return ExtractionProvider(provider_str)

    async def _initialize_provider(self, provider: ExtractionProvider) -> None:
        """Create the HTTP client for the extraction service."""
        if provider != ExtractionProvider.HTTP:
            raise ProviderUnavailableError(
                f"Unsupported extraction provider: {provider}", provider=provider.value
            )

        headers = {}
        if self._settings.EXTRACTION_API_KEY:
            headers["Authorization"] = f"Bearer {self._settings.EXTRACTION_API_KEY}"

        self._http_client = httpx.AsyncClient(
            base_url=self._settings.EXTRACTION_SERVICE_URL,
            timeout=self.config.timeout_seconds,
            headers=headers,
            transport=self._transport,
        )
        logger.info("HTTP extraction client initialized")

    async def extract(
        self, document_handle: str, document_type: DocumentType
    ) -> GatewayResult[ExtractionResult]:
        """Extract fields from a stored document."""
        return await self.execute(
            ExtractionRequest(document_handle=document_handle, document_type=document_type)
        )

    async def _execute_request(
        self, request: ExtractionRequest, provider: ExtractionProvider
    ) -> ExtractionResult:
        if not self._http_client:
            raise ProviderUnavailableError(
                "Extraction client not initialized", provider=provider.value
            )

        content = await self._store.get(request.document_handle)

        try:
            response = await self._http_client.post(
                "/v1/extract",
                data={"document_type": request.document_type.value},
                files={"file": ("document", content, "application/octet-stream")},
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                "Extraction service timed out", provider=provider.value, original_error=e
            )
        except httpx.TransportError as e:
            raise ProviderUnavailableError(
                f"Could not reach extraction service: {e}",
                provider=provider.value,
                original_error=e,
            )

        if response.status_code == 429:
            raise ProviderRateLimitError(
                "Extraction service rate limit exceeded", provider=provider.value
            )
        if response.status_code == 408 or response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Extraction service returned {response.status_code}", provider=provider.value
            )
        if response.status_code != 200:
            raise ProviderResponseError(
                f"Extraction service rejected request: {response.status_code}",
                provider=provider.value,
            )

        return self._parse_response(response, provider)

    def _parse_response(self, response: httpx.Response, provider: ExtractionProvider) -> ExtractionResult:
        try:
            data: dict[str, Any] = response.json()
            return ExtractionResult(
                confidence=float(data["confidence"]),
                fields={str(k): str(v) for k, v in (data.get("fields") or {}).items()},
                flagged_sensitive=bool(data.get("flagged_sensitive", False)),
                provider=provider.value,
            )
        except (ValueError, KeyError, TypeError, PydanticValidationError) as e:
            raise ProviderResponseError(
                f"Malformed extraction response: {e}", provider=provider.value, original_error=e
            )

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        await super().close()


__all__ = [
    "ExtractionClient",
    "ExtractionGateway",
    "ExtractionRequest",
    "GatewayError",
]
