"""API key rotation for multi-key channels.

The round-robin cursor lives on the in-memory Channel record and is read and
advanced under the channel store's lock, so concurrent requests never hand
out the same slot twice in a row.

Each key also carries a consecutive-failure count. Keys at or over
``max_key_errors`` are left out of rotation while another enabled key is
below it; a success on a key clears its count.
"""

import logging
import random
import threading
from typing import Optional

from ..errors import ConfigurationError
from .types import Channel, KeySelection, KeyStrategy

logger = logging.getLogger(__name__)

DEFAULT_MAX_KEY_ERRORS = 10


def mask_key(key: Optional[str]) -> str:
    """Render a key for logs: first 8 and last 4 characters."""
    if not key:
        return ""
    if len(key) <= 12:
        return key[:3] + "..."
    return f"{key[:8]}...{key[-4:]}"


class KeyRotator:
    """Picks one API key per attempt according to the channel's strategy."""

    def __init__(
        self,
        lock: Optional[threading.Lock] = None,
        rng: Optional[random.Random] = None,
        max_key_errors: int = DEFAULT_MAX_KEY_ERRORS,
    ):
        """Initialize the rotator.

        Args:
            lock: Lock guarding channel cursors; pass the channel store's
                  lock so cursor updates and store edits serialize.
            rng: Random source for the random strategy (injectable for tests).
            max_key_errors: Consecutive failures after which a key is skipped
        """
        self._lock = lock or threading.Lock()
        self._rng = rng or random.Random()
        self._max_key_errors = max_key_errors

    def select_key(self, channel: Channel, record_usage: bool = True) -> KeySelection:
        """Choose a key for the next attempt on ``channel``.

        Args:
            channel: Live channel record (its cursor is mutated)
            record_usage: False for diagnostic previews; the cursor is not
                          advanced and nothing is logged above debug level

        Returns:
            KeySelection for the attempt

        Raises:
            ConfigurationError: If the channel has no usable key
        """
        if channel.api_keys is None or (not channel.api_keys and channel.api_key):
            if not channel.api_key:
                raise ConfigurationError(
                    f"Channel {channel.id} has no API key configured",
                    channel_id=channel.id,
                )
            return KeySelection(
                key=channel.api_key,
                key_index=-1,
                key_name="",
                strategy="single",
            )

        enabled = [(i, entry) for i, entry in enumerate(channel.api_keys) if entry.enabled]
        if not enabled:
            raise ConfigurationError(
                f"Channel {channel.id} has an empty key list",
                channel_id=channel.id,
            )
        healthy = [(i, entry) for i, entry in enabled if entry.error_count < self._max_key_errors]
        if healthy:
            enabled = healthy
        elif record_usage:
            logger.warning(
                f"Every key of channel {channel.id} has failed {self._max_key_errors}+ times; "
                f"rotating over all enabled keys"
            )

        strategy = channel.key_strategy
        if strategy == KeyStrategy.RANDOM:
            index, entry = enabled[self._rng.randrange(len(enabled))]
        else:
            with self._lock:
                slot = channel.key_cursor % len(enabled)
                if record_usage:
                    channel.key_cursor = (slot + 1) % len(enabled)
            index, entry = enabled[slot]

        selection = KeySelection(
            key=entry.key,
            key_index=index,
            key_name=entry.name or f"Key {index + 1}",
            strategy=strategy.value,
        )

        if record_usage:
            logger.debug(
                f"Channel {channel.id} using {selection.key_name} "
                f"({mask_key(entry.key)}) via {strategy.value}"
            )
        return selection

    def reset(self, channel: Channel) -> None:
        """Rewind the round-robin cursor of one channel."""
        with self._lock:
            channel.key_cursor = 0

    def report_failure(self, channel: Channel, key_index: int) -> None:
        """Count a failed attempt against one key. Single-key channels are ignored."""
        entry = self._entry(channel, key_index)
        if entry is None:
            return
        with self._lock:
            entry.error_count += 1
            count = entry.error_count
        if count == self._max_key_errors:
            logger.warning(
                f"Key {entry.name or key_index + 1} of channel {channel.id} "
                f"({mask_key(entry.key)}) reached {count} consecutive errors; skipping it"
            )

    def report_success(self, channel: Channel, key_index: int) -> None:
        """Clear the failure count of one key."""
        entry = self._entry(channel, key_index)
        if entry is None:
            return
        with self._lock:
            entry.error_count = 0

    @staticmethod
    def _entry(channel: Channel, key_index: int):
        if key_index < 0 or not channel.api_keys or key_index >= len(channel.api_keys):
            return None
        return channel.api_keys[key_index]
