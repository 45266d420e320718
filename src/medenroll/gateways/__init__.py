"""
Provider gateways for external services.
"""

from medenroll.gateways.base import (
    BaseGateway,
    GatewayConfig,
    GatewayError,
    GatewayResult,
    ProviderHealth,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from medenroll.gateways.extraction_gateway import (
    ExtractionClient,
    ExtractionGateway,
    ExtractionRequest,
)

__all__ = [
    "BaseGateway",
    "ExtractionClient",
    "ExtractionGateway",
    "ExtractionRequest",
    "GatewayConfig",
    "GatewayError",
    "GatewayResult",
    "ProviderHealth",
    "ProviderRateLimitError",
    "ProviderResponseError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
]
