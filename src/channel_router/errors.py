"""Error taxonomy for channel routing.

Every error raised by the routing core derives from GatewayError so callers
can catch the whole family at one boundary. Only ProviderCallError (and its
timeout subclass) is retryable inside the fallback budget; the rest are
terminal for the request that raised them.
"""

from typing import List, Optional


class GatewayError(Exception):
    """Base class for channel routing errors."""


class ValidationError(GatewayError):
    """Channel definition or request rejected before any I/O."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(GatewayError):
    """Unknown channel id."""

    def __init__(self, message: str, channel_id: Optional[str] = None):
        super().__init__(message)
        self.channel_id = channel_id


class NoChannelAvailableError(GatewayError):
    """No enabled channel serves the requested model."""

    def __init__(self, model: str, excluded: Optional[List[str]] = None):
        super().__init__(f"No available channel for model: {model}")
        self.model = model
        self.excluded = list(excluded or [])


class ConfigurationError(GatewayError):
    """Channel is misconfigured (empty key list, unknown adapter).

    Within one request the offending channel is excluded from further
    candidates.
    """

    def __init__(self, message: str, channel_id: Optional[str] = None):
        super().__init__(message)
        self.channel_id = channel_id


class ProviderCallError(GatewayError):
    """Upstream provider call failed.

    Raised by adapters for a single attempt, and by the orchestrator as the
    terminal error once the fallback budget is exhausted. The terminal form
    carries the full switch chain.
    """

    def __init__(
        self,
        message: str,
        error_type: str = "unknown",
        status_code: Optional[int] = None,
        switch_chain: Optional[List[str]] = None,
        attempts: int = 0,
        response_body: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.switch_chain = list(switch_chain or [])
        self.attempts = attempts
        self.response_body = response_body


class RequestTimeoutError(ProviderCallError):
    """Caller deadline expired while a provider call was in flight."""

    def __init__(
        self,
        message: str,
        switch_chain: Optional[List[str]] = None,
        attempts: int = 0,
    ):
        super().__init__(
            message,
            error_type="timeout",
            switch_chain=switch_chain,
            attempts=attempts,
        )


def classify_error(error: BaseException) -> str:
    """Map an exception to a coarse error category.

    Returns one of: auth, quota, network, server, empty, timeout, unknown.
    """
    if isinstance(error, ProviderCallError) and error.error_type != "unknown":
        return error.error_type

    status = getattr(error, "status_code", None)
    message = str(error).lower()

    if status in (401, 403) or "unauthorized" in message or "invalid api key" in message:
        return "auth"
    if status == 429 or "rate limit" in message or "quota" in message:
        return "quota"
    if isinstance(status, int) and status >= 500:
        return "server"
    if "timeout" in message or "timed out" in message:
        return "timeout"
    if "connection" in message or "econnrefused" in message or "network" in message:
        return "network"
    if "empty" in message:
        return "empty"
    return "unknown"


__all__ = [
    "GatewayError",
    "ValidationError",
    "NotFoundError",
    "NoChannelAvailableError",
    "ConfigurationError",
    "ProviderCallError",
    "RequestTimeoutError",
    "classify_error",
]
