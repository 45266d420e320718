"""
Unit tests for the provider gateway base.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum

import pytest

from medenroll.core.enums import ProviderStatus
from medenroll.core.errors import ExternalServiceError
from medenroll.gateways.base import (
    BaseGateway,
    GatewayConfig,
    GatewayError,
    GatewayResult,
    ProviderHealth,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)


class EchoProvider(str, Enum):
    ECHO = "echo"


class EchoGateway(BaseGateway[str, str, EchoProvider]):
    """Gateway whose behaviour is scripted per request."""

    def __init__(self, config: GatewayConfig):
        super().__init__(config)
        self.initialized_with: list[EchoProvider] = []

    @property
    def gateway_name(self) -> str:
        return "echo"

    async def _initialize_provider(self, provider: EchoProvider) -> None:
        self.initialized_with.append(provider)

    async def _execute_request(self, request: str, provider: EchoProvider) -> str:
        if request == "slow":
            await asyncio.sleep(5)
        if request == "boom":
            raise RuntimeError("connection reset")
        if request == "limited":
            raise ProviderRateLimitError("Rate limit exceeded", provider=provider.value)
        return request.upper()

    def _parse_provider(self, provider_str: str) -> EchoProvider:
        return EchoProvider(provider_str)


class TestGatewayConfig:
    """Tests for GatewayConfig dataclass."""

    def test_default_values(self):
        config = GatewayConfig(provider="echo")
        assert config.timeout_seconds == 10.0
        assert config.circuit_breaker_threshold == 5
        assert config.circuit_breaker_timeout_seconds == 300.0


class TestGatewayResult:
    """Tests for GatewayResult dataclass."""

    def test_successful_result(self):
        result = GatewayResult(success=True, data="ok", provider_used="echo", latency_ms=12.5)
        assert result.error_code is None
        assert result.metadata == {}

    def test_failed_result_exposes_code(self):
        result = GatewayResult(success=False, error=ProviderTimeoutError("Timeout after 10s", provider="echo"))
        assert result.data is None
        assert result.error_code == "provider_timeout"


class TestProviderHealth:
    """Tests for ProviderHealth dataclass."""

    def test_default_health(self):
        health = ProviderHealth()
        assert health.status == ProviderStatus.HEALTHY
        assert health.consecutive_failures == 0
        assert health.is_circuit_open is False

    def test_record_success(self):
        health = ProviderHealth()
        health.consecutive_failures = 3
        health.status = ProviderStatus.DEGRADED

        health.record_success(latency_ms=50.0)

        assert health.consecutive_failures == 0
        assert health.status == ProviderStatus.HEALTHY
        assert health.request_count == 1
        assert health.avg_latency_ms == 50.0

    def test_record_failure(self):
        health = ProviderHealth()

        health.record_failure("error 1", circuit_breaker_threshold=5, timeout_seconds=60)
        assert health.consecutive_failures == 1
        assert health.status == ProviderStatus.HEALTHY

        health.record_failure("error 2", circuit_breaker_threshold=5, timeout_seconds=60)
        assert health.status == ProviderStatus.DEGRADED

        for i in range(3):
            health.record_failure(f"error {i + 3}", circuit_breaker_threshold=5, timeout_seconds=60)
        assert health.status == ProviderStatus.UNHEALTHY
        assert health.is_circuit_open is True
        assert health.last_error == "error 5"

    def test_circuit_breaker_timeout(self):
        health = ProviderHealth()
        health.circuit_open_until = datetime.now(timezone.utc) + timedelta(seconds=60)
        assert health.is_circuit_open is True

        health.circuit_open_until = datetime.now(timezone.utc) - timedelta(seconds=1)
        assert health.is_circuit_open is False


class TestGatewayExceptions:
    """Gateway errors belong to the external service branch of the taxonomy."""

    def test_gateway_error(self):
        error = GatewayError("Test error", provider="echo", original_error=ValueError("orig"))
        assert str(error) == "Test error"
        assert error.provider == "echo"
        assert error.service == "echo"
        assert isinstance(error, ExternalServiceError)
        assert isinstance(error.original_error, ValueError)

    @pytest.mark.parametrize(
        "error_cls, code",
        [
            (ProviderUnavailableError, "provider_unavailable"),
            (ProviderTimeoutError, "provider_timeout"),
            (ProviderRateLimitError, "provider_rate_limited"),
        ],
    )
    def test_error_codes(self, error_cls, code):
        assert error_cls("failed", provider="echo").error_code == code


@pytest.mark.unit
class TestBaseGateway:
    """Timeout, failure capture and circuit breaker in ``execute``."""

    @pytest.mark.asyncio
    async def test_lazy_initialization_once(self):
        gateway = EchoGateway(GatewayConfig(provider="echo"))

        first = await gateway.execute("hello")
        await gateway.execute("again")

        assert first.success
        assert first.data == "HELLO"
        assert gateway.initialized_with == [EchoProvider.ECHO]

    @pytest.mark.asyncio
    async def test_timeout_is_returned_not_raised(self):
        gateway = EchoGateway(GatewayConfig(provider="echo", timeout_seconds=0.01))

        result = await gateway.execute("slow")

        assert not result.success
        assert result.error_code == "provider_timeout"
        assert gateway.health.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self):
        gateway = EchoGateway(GatewayConfig(provider="echo"))

        result = await gateway.execute("boom")

        assert result.error_code == "provider_error"
        assert isinstance(result.error.original_error, RuntimeError)

    @pytest.mark.asyncio
    async def test_gateway_errors_pass_through(self):
        gateway = EchoGateway(GatewayConfig(provider="echo"))

        result = await gateway.execute("limited")

        assert result.error_code == "provider_rate_limited"

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self):
        gateway = EchoGateway(GatewayConfig(provider="echo", circuit_breaker_threshold=2))
        await gateway.execute("boom")
        await gateway.execute("boom")

        result = await gateway.execute("hello")

        assert result.error_code == "provider_unavailable"
        assert gateway.health.status == ProviderStatus.UNHEALTHY
        assert gateway.health.request_count == 2
