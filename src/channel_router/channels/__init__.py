"""Channel registry, key rotation, model resolution and selection.

Example usage:
    from channel_router.channels import ChannelStore, ChannelSelector

    store = ChannelStore(Path("channels.yaml"))
    store.init()
    candidates = ChannelSelector(store).select_candidates("gpt-4o")
"""

from .keys import KeyRotator, mask_key
from .resolver import resolve_actual_model, resolve_for_channel
from .selector import ChannelSelector
from .store import ChannelStore, normalize_base_url
from .types import (
    AdapterType,
    ApiKeyEntry,
    Candidate,
    Channel,
    ChannelStatus,
    KeySelection,
    KeyStrategy,
    ModelResolution,
)

__all__ = [
    # Types
    "AdapterType",
    "ApiKeyEntry",
    "Candidate",
    "Channel",
    "ChannelStatus",
    "KeySelection",
    "KeyStrategy",
    "ModelResolution",
    # Store
    "ChannelStore",
    "normalize_base_url",
    # Keys
    "KeyRotator",
    "mask_key",
    # Resolution and selection
    "resolve_actual_model",
    "resolve_for_channel",
    "ChannelSelector",
]
