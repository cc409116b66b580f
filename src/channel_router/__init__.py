"""Channel Router - provider channel routing and usage accounting for AI chat gateways.

Usage:
    from channel_router import ChatRequest, get_services

    services = get_services()
    result = await services.orchestrator.run(
        ChatRequest(model="gpt-4o", messages=[{"role": "user", "content": "Hi"}])
    )
    print(result.text)

For the HTTP server:
    pip install "llm-channel-router[http]"
    channel-router
"""

from channel_router.channels import (
    AdapterType,
    Channel,
    ChannelSelector,
    ChannelStatus,
    ChannelStore,
    KeyRotator,
    KeyStrategy,
    resolve_actual_model,
)
from channel_router.diagnostics import BatchTester, ChannelProbe
from channel_router.errors import (
    ConfigurationError,
    GatewayError,
    NoChannelAvailableError,
    NotFoundError,
    ProviderCallError,
    RequestTimeoutError,
    ValidationError,
)
from channel_router.routing import ChatRequest, ChatResult, FallbackOrchestrator
from channel_router.service import Services, get_services, reset_services
from channel_router.unified_config import UnifiedConfig, get_config, reload_config
from channel_router.usage import StatsAggregator, UsageRecord, UsageRecorder

__version__ = "0.4.0"

__all__ = [
    # Channels
    "AdapterType",
    "Channel",
    "ChannelStatus",
    "ChannelStore",
    "ChannelSelector",
    "KeyRotator",
    "KeyStrategy",
    "resolve_actual_model",
    # Routing
    "ChatRequest",
    "ChatResult",
    "FallbackOrchestrator",
    # Usage
    "UsageRecord",
    "UsageRecorder",
    "StatsAggregator",
    # Diagnostics
    "ChannelProbe",
    "BatchTester",
    # Errors
    "GatewayError",
    "ValidationError",
    "NotFoundError",
    "NoChannelAvailableError",
    "ConfigurationError",
    "ProviderCallError",
    "RequestTimeoutError",
    # Wiring
    "Services",
    "get_services",
    "reset_services",
    "UnifiedConfig",
    "get_config",
    "reload_config",
    "__version__",
]
