"""Logical-to-provider model resolution."""

from .store import ChannelStore
from .types import Channel, ModelResolution


def resolve_for_channel(channel: Channel, logical_model: str) -> ModelResolution:
    """Resolve against an already-fetched channel record."""
    target = channel.model_mapping.get(logical_model)
    if target:
        return ModelResolution(mapped=True, actual_model=target)
    return ModelResolution(mapped=False, actual_model=logical_model)


def resolve_actual_model(
    store: ChannelStore,
    channel_id: str,
    logical_model: str,
) -> ModelResolution:
    """Map a logical model name to the provider model id for one channel.

    Reads the live channel record on every call, so mapping edits apply to
    the next request without any cache to invalidate.

    Raises:
        NotFoundError: Unknown channel id
    """
    return resolve_for_channel(store.require(channel_id), logical_model)
