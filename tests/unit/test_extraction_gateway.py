"""
Extraction Gateway Tests.

The HTTP extraction service is replaced by ``httpx.MockTransport``.
"""

import httpx
import pytest

from fakes import PDF_BYTES
from medenroll.core.config import EnrollmentSettings
from medenroll.core.enums import DocumentType, ProviderStatus
from medenroll.gateways.base import GatewayConfig
from medenroll.gateways.extraction_gateway import ExtractionGateway
from medenroll.services.document_store import DocumentStore


def _gateway(settings, handler, config=None) -> tuple[ExtractionGateway, DocumentStore]:
    store = DocumentStore()
    gateway = ExtractionGateway(store, settings, config=config, transport=httpx.MockTransport(handler))
    return gateway, store


@pytest.mark.unit
class TestExtractionGateway:
    """Response parsing and error classification."""

    @pytest.mark.asyncio
    async def test_successful_extraction(self, settings):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"confidence": 0.93, "fields": {"document_number": "X1234567", "year": 1984}},
            )

        gateway, store = _gateway(settings, handler)
        handle = await store.put(PDF_BYTES)

        result = await gateway.extract(handle, DocumentType.ID)

        assert result.success
        assert result.data.confidence == 0.93
        assert result.data.fields == {"document_number": "X1234567", "year": "1984"}
        assert result.data.flagged_sensitive is False
        assert result.provider_used == "http"
        assert seen[0].url.path == "/v1/extract"
        body = seen[0].content
        assert b"id_document" in body
        assert PDF_BYTES in body
        assert gateway.health.status == ProviderStatus.HEALTHY
        await gateway.close()

    @pytest.mark.asyncio
    async def test_api_key_is_sent(self):
        settings = EnrollmentSettings(_env_file=None, ENVIRONMENT="testing", EXTRACTION_API_KEY="k-123")
        headers: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            headers.append(request.headers.get("Authorization"))
            return httpx.Response(200, json={"confidence": 0.9})

        gateway, store = _gateway(settings, handler)
        await gateway.extract(await store.put(PDF_BYTES), DocumentType.ID)

        assert headers == ["Bearer k-123"]
        await gateway.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code, error_code",
        [
            (429, "provider_rate_limited"),
            (408, "provider_unavailable"),
            (500, "provider_unavailable"),
            (503, "provider_unavailable"),
            (400, "provider_bad_response"),
            (404, "provider_bad_response"),
        ],
    )
    async def test_http_errors_are_classified(self, settings, status_code, error_code):
        gateway, store = _gateway(settings, lambda request: httpx.Response(status_code))

        result = await gateway.extract(await store.put(PDF_BYTES), DocumentType.PROOF_OF_ADDRESS)

        assert not result.success
        assert result.data is None
        assert result.error_code == error_code
        await gateway.close()

    @pytest.mark.asyncio
    async def test_malformed_body(self, settings):
        gateway, store = _gateway(settings, lambda request: httpx.Response(200, json={"fields": {}}))

        result = await gateway.extract(await store.put(PDF_BYTES), DocumentType.ID)

        assert result.error_code == "provider_bad_response"
        await gateway.close()

    @pytest.mark.asyncio
    async def test_confidence_out_of_range(self, settings):
        gateway, store = _gateway(settings, lambda request: httpx.Response(200, json={"confidence": 1.7}))

        result = await gateway.extract(await store.put(PDF_BYTES), DocumentType.ID)

        assert result.error_code == "provider_bad_response"
        await gateway.close()

    @pytest.mark.asyncio
    async def test_connection_error(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        gateway, store = _gateway(settings, handler)

        result = await gateway.extract(await store.put(PDF_BYTES), DocumentType.ID)

        assert result.error_code == "provider_unavailable"
        await gateway.close()

    @pytest.mark.asyncio
    async def test_read_timeout(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        gateway, store = _gateway(settings, handler)

        result = await gateway.extract(await store.put(PDF_BYTES), DocumentType.ID)

        assert result.error_code == "provider_timeout"
        await gateway.close()

    @pytest.mark.asyncio
    async def test_circuit_breaker_short_circuits(self, settings):
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(503)

        config = GatewayConfig(
            provider="http",
            timeout_seconds=5.0,
            circuit_breaker_threshold=2,
            circuit_breaker_timeout_seconds=60.0,
        )
        gateway, store = _gateway(settings, handler, config=config)
        handle = await store.put(PDF_BYTES)

        await gateway.extract(handle, DocumentType.ID)
        await gateway.extract(handle, DocumentType.ID)
        result = await gateway.extract(handle, DocumentType.ID)

        assert len(calls) == 2
        assert result.error_code == "provider_unavailable"
        assert gateway.health.status == ProviderStatus.UNHEALTHY
        assert gateway.health.is_circuit_open
        await gateway.close()
