"""
Base Gateway Abstract Class for External Provider Access.

Wraps unreliable remote dependencies with:
- Hard per-request timeout
- Circuit breaker
- Health monitoring
- Usage tracking

Retries are not performed here; callers own their retry policy and
attempt counting.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar
import asyncio
import logging
import time

from medenroll.core.enums import ProviderStatus
from medenroll.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# Type variables for generic gateway pattern
TRequest = TypeVar("TRequest")
TResponse = TypeVar("TResponse")
TProvider = TypeVar("TProvider", bound=Enum)


class GatewayError(ExternalServiceError):
    """Base exception for gateway errors."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        original_error: Optional[Exception] = None,
        error_code: str = "provider_error",
    ):
        super().__init__(message, service=provider or "gateway", error_code=error_code)
        self.provider = provider
        self.original_error = original_error


class ProviderUnavailableError(GatewayError):
    """Raised when a provider is not available (connection refused, circuit open)."""

    def __init__(self, message: str, provider: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, provider, original_error, error_code="provider_unavailable")


class ProviderTimeoutError(GatewayError):
    """Raised when a provider request times out."""

    def __init__(self, message: str, provider: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, provider, original_error, error_code="provider_timeout")


class ProviderRateLimitError(GatewayError):
    """Raised when a provider rate limit is exceeded."""

    def __init__(self, message: str, provider: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, provider, original_error, error_code="provider_rate_limited")


class ProviderResponseError(GatewayError):
    """Raised when a provider answers with a malformed or unusable response."""

    def __init__(self, message: str, provider: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, provider, original_error, error_code="provider_bad_response")


@dataclass
class GatewayConfig:
    """Configuration for a gateway instance."""

    provider: str
    timeout_seconds: float = 10.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout_seconds: float = 300.0


@dataclass
class GatewayResult(Generic[TResponse]):
    """Result wrapper for gateway responses."""

    success: bool
    data: Optional[TResponse] = None
    error: Optional[GatewayError] = None
    provider_used: Optional[str] = None
    latency_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None


@dataclass
class ProviderHealth:
    """Health status and circuit breaker state for a provider."""

    status: ProviderStatus = ProviderStatus.HEALTHY
    last_check: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    avg_latency_ms: float = 0.0
    request_count: int = 0
    error_count: int = 0
    circuit_open_until: Optional[datetime] = None

    @property
    def is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self.circuit_open_until is None:
            return False
        return datetime.now(timezone.utc) < self.circuit_open_until

    def record_success(self, latency_ms: float) -> None:
        """Record a successful request."""
        self.consecutive_failures = 0
        self.request_count += 1
        self.last_check = datetime.now(timezone.utc)
        self.circuit_open_until = None
        # Rolling average latency
        if self.request_count == 1:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = self.avg_latency_ms * 0.9 + latency_ms * 0.1
        self.status = ProviderStatus.HEALTHY

    def record_failure(
        self, error: str, circuit_breaker_threshold: int, timeout_seconds: float
    ) -> None:
        """Record a failed request."""
        self.consecutive_failures += 1
        self.error_count += 1
        self.request_count += 1
        self.last_error = error
        self.last_check = datetime.now(timezone.utc)

        if self.consecutive_failures >= circuit_breaker_threshold:
            self.circuit_open_until = datetime.now(timezone.utc) + timedelta(
                seconds=timeout_seconds
            )
            self.status = ProviderStatus.UNHEALTHY
        elif self.consecutive_failures >= max(circuit_breaker_threshold // 2, 1):
            self.status = ProviderStatus.DEGRADED


class BaseGateway(ABC, Generic[TRequest, TResponse, TProvider]):
    """
    Abstract base class for provider gateways.

    Implements:
    - Lazy provider initialization
    - Hard timeout around every request
    - Circuit breaker pattern
    - Health monitoring
    """

    def __init__(self, config: GatewayConfig):
        self.config = config
        self._health = ProviderHealth()
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        """Name of this gateway for logging."""

    @abstractmethod
    async def _initialize_provider(self, provider: TProvider) -> None:
        """Initialize a specific provider."""

    @abstractmethod
    async def _execute_request(self, request: TRequest, provider: TProvider) -> TResponse:
        """Execute a request using the specified provider."""

    @abstractmethod
    def _parse_provider(self, provider_str: str) -> TProvider:
        """Parse provider string to enum."""

    @property
    def health(self) -> ProviderHealth:
        return self._health

    async def initialize(self) -> None:
        """Initialize the configured provider."""
        async with self._lock:
            if self._initialized:
                return

            logger.info(f"Initializing {self.gateway_name} gateway...")
            provider = self._parse_provider(self.config.provider)
            await self._initialize_provider(provider)
            self._initialized = True
            logger.info(f"{self.gateway_name} gateway initialized")

    async def execute(self, request: TRequest) -> GatewayResult[TResponse]:
        """
        Execute a request with timeout and circuit breaker.

        Never raises for provider failures: the failure is returned inside
        the ``GatewayResult`` so the caller's retry policy can count it.
        """
        start_time = time.perf_counter()

        if self._health.is_circuit_open:
            logger.info(f"{self.gateway_name}: circuit breaker open, request short-circuited")
            return GatewayResult(
                success=False,
                error=ProviderUnavailableError("Circuit breaker open", provider=self.config.provider),
                provider_used=self.config.provider,
            )

        try:
            if not self._initialized:
                await self.initialize()
            provider = self._parse_provider(self.config.provider)
            response = await asyncio.wait_for(
                self._execute_request(request, provider),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            error: GatewayError = ProviderTimeoutError(
                f"Timeout after {self.config.timeout_seconds}s",
                provider=self.config.provider,
                original_error=e,
            )
        except GatewayError as e:
            error = e
        except Exception as e:
            error = GatewayError(str(e), provider=self.config.provider, original_error=e)
        else:
            latency = (time.perf_counter() - start_time) * 1000
            self._health.record_success(latency)
            logger.debug(f"{self.gateway_name}: request succeeded in {latency:.1f}ms")
            return GatewayResult(
                success=True,
                data=response,
                provider_used=self.config.provider,
                latency_ms=latency,
            )

        latency = (time.perf_counter() - start_time) * 1000
        self._health.record_failure(
            error.message,
            self.config.circuit_breaker_threshold,
            self.config.circuit_breaker_timeout_seconds,
        )
        logger.warning(f"{self.gateway_name}: request failed ({error.error_code}): {error.message}")
        return GatewayResult(
            success=False,
            error=error,
            provider_used=self.config.provider,
            latency_ms=latency,
        )

    async def close(self) -> None:
        """Clean up gateway resources."""
        self._initialized = False
        logger.info(f"{self.gateway_name} gateway closed")
