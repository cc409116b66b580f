"""YAML-backed channel registry.

Channels live in memory after init() and every mutation is written back to
the YAML file before the call returns. Edits are last-write-wins at the
field level; there is no version guard.
"""

import logging
import os
import secrets
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from urllib.parse import urlsplit

import yaml

from ..errors import NotFoundError, ValidationError
from ..events import GatewayEventType, emit_event
from .types import HEALTH_FIELDS, AdapterType, Channel, ChannelStatus, normalize_api_keys

if TYPE_CHECKING:
    from ..usage.aggregator import StatsAggregator

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS = {
    AdapterType.OPENAI: "https://api.openai.com/v1",
    AdapterType.CLAUDE: "https://api.anthropic.com/v1",
    AdapterType.GEMINI: "https://generativelanguage.googleapis.com",
}

# Editing any of these invalidates the last observed health
_HEALTH_RESET_FIELDS = {"api_key", "api_keys", "base_url", "adapter_type"}

# Managed by the store, never accepted from callers
_PROTECTED_FIELDS = {"id", "key_cursor", "seq"}


def normalize_base_url(base_url: Optional[str], adapter_type: AdapterType) -> str:
    """Normalize a provider base URL.

    Empty URLs get the provider default. Trailing slashes are stripped. For
    openai and claude channels, ``/v1`` is appended unless the URL already
    carries a path of its own.
    """
    if not base_url or not base_url.strip():
        return DEFAULT_BASE_URLS.get(adapter_type, "")

    url = base_url.strip().rstrip("/")
    if urlsplit(url).path.strip("/"):
        return url
    if adapter_type in (AdapterType.OPENAI, AdapterType.CLAUDE):
        url += "/v1"
    return url


def _generate_channel_id(adapter_type: AdapterType) -> str:
    return f"{adapter_type.value}-{secrets.token_hex(4)}"


class ChannelStore:
    """Durable registry of Channel records."""

    def __init__(
        self,
        path: Optional[Path] = None,
        stats: Optional["StatsAggregator"] = None,
        default_priority: int = 100,
    ):
        """Initialize the store.

        Args:
            path: YAML file holding the channel list. None keeps channels in
                  memory only.
            stats: Aggregator joined in get_all_with_stats()
            default_priority: Priority given to channels created without one
        """
        self._path = Path(path) if path is not None else None
        self._stats = stats
        self._default_priority = default_priority
        self._channels: Dict[str, Channel] = {}
        self._next_seq = 0
        self._initialized = False
        self._lock = threading.Lock()

    @property
    def lock(self) -> threading.Lock:
        """Lock guarding the channel map and per-channel key cursors."""
        return self._lock

    def attach_stats(self, stats: "StatsAggregator") -> None:
        self._stats = stats

    # -------------------------------------------------------------------------
    # Loading and persistence
    # -------------------------------------------------------------------------

    def init(self) -> None:
        """Load channels from disk. Calling it again is a no-op.

        Health is not restored: every loaded channel starts at unknown.
        """
        with self._lock:
            if self._initialized:
                return
            for raw in self._read_file():
                try:
                    fields = {k: v for k, v in raw.items() if k not in HEALTH_FIELDS}
                    channel = Channel.from_dict(fields, seq=self._next_seq)
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed channel in {self._path}: {e}")
                    continue
                channel.base_url = normalize_base_url(channel.base_url, channel.adapter_type)
                self._channels[channel.id] = channel
                self._next_seq += 1
            self._initialized = True
        logger.info(f"Loaded {len(self._channels)} channels")

    def _read_file(self) -> List[Dict[str, Any]]:
        if self._path is None or not self._path.exists():
            return []
        with open(self._path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return list(data.get("channels") or [])

    def _persist(self) -> None:
        """Write all channels to disk, without runtime health. Caller holds the lock."""
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        ordered = sorted(self._channels.values(), key=lambda c: c.seq)
        payload = {"channels": [c.to_persisted_dict() for c in ordered]}
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(payload, f, allow_unicode=True, sort_keys=False)
        os.replace(tmp_path, self._path)

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create(self, spec: Dict[str, Any]) -> Channel:
        """Validate, register and persist a new channel.

        Raises:
            ValidationError: Missing name, adapter_type, base_url or key
        """
        self.init()
        for required in ("name", "adapter_type", "base_url"):
            if not spec.get(required):
                raise ValidationError(f"Missing required field: {required}", field=required)

        has_single = bool(spec.get("api_key"))
        has_multi = bool(spec.get("api_keys"))
        if not has_single and not has_multi:
            raise ValidationError("At least one API key is required", field="api_key")
        if has_single and has_multi:
            raise ValidationError("Set either api_key or api_keys, not both", field="api_keys")

        try:
            adapter_type = AdapterType(spec["adapter_type"])
        except ValueError:
            raise ValidationError(
                f"Unknown adapter type: {spec['adapter_type']}", field="adapter_type"
            )

        data = {k: v for k, v in spec.items() if k not in _PROTECTED_FIELDS}
        data.setdefault("priority", self._default_priority)
        data["status"] = ChannelStatus.UNKNOWN.value

        with self._lock:
            channel_id = spec.get("id") or _generate_channel_id(adapter_type)
            if channel_id in self._channels:
                raise ValidationError(f"Channel already exists: {channel_id}", field="id")
            data["id"] = channel_id
            channel = self._build(data, seq=self._next_seq)
            self._channels[channel.id] = channel
            self._next_seq += 1
            self._persist()

        logger.info(f"Created channel {channel.id} ({channel.name})")
        return channel

    def update(self, channel_id: str, patch: Dict[str, Any]) -> Channel:
        """Shallow-merge ``patch`` into a channel and persist.

        Lists in the patch replace the stored lists. Changing credentials,
        base URL or adapter resets the status to unknown.

        Raises:
            NotFoundError: Unknown channel id
            ValidationError: Patch produces an invalid channel
        """
        self.init()
        with self._lock:
            current = self._channels.get(channel_id)
            if current is None:
                raise NotFoundError(f"Channel not found: {channel_id}", channel_id=channel_id)

            changes = {k: v for k, v in patch.items() if k not in _PROTECTED_FIELDS}
            merged = current.to_dict()
            merged.update(changes)
            if changes.get("api_keys"):
                merged.pop("api_key", None)
            elif changes.get("api_key"):
                merged.pop("api_keys", None)
            if not merged.get("api_key") and not merged.get("api_keys"):
                raise ValidationError("At least one API key is required", field="api_key")
            if _HEALTH_RESET_FIELDS & changes.keys():
                merged["status"] = ChannelStatus.UNKNOWN.value
                merged["error_count"] = 0

            updated = self._build(merged, seq=current.seq)
            if "api_keys" not in changes:
                updated.key_cursor = current.key_cursor
                for entry, previous in zip(updated.api_keys or [], current.api_keys or []):
                    entry.error_count = previous.error_count
            self._channels[channel_id] = updated
            self._persist()

        logger.info(f"Updated channel {channel_id}: {sorted(changes)}")
        return updated

    def delete(self, channel_id: str) -> None:
        """Remove a channel and persist.

        Raises:
            NotFoundError: Unknown channel id
        """
        self.init()
        with self._lock:
            if channel_id not in self._channels:
                raise NotFoundError(f"Channel not found: {channel_id}", channel_id=channel_id)
            del self._channels[channel_id]
            self._persist()
        logger.info(f"Deleted channel {channel_id}")

    def _build(self, data: Dict[str, Any], seq: int) -> Channel:
        if "api_keys" in data and data["api_keys"] is not None:
            try:
                data["api_keys"] = [
                    {"key": e.key, "name": e.name, "enabled": e.enabled}
                    for e in normalize_api_keys(data["api_keys"])
                ]
            except (KeyError, TypeError) as e:
                raise ValidationError(f"Invalid api_keys: {e}", field="api_keys")
        try:
            channel = Channel.from_dict(data, seq=seq)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid channel: {e}")
        channel.base_url = normalize_base_url(channel.base_url, channel.adapter_type)
        return channel

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, channel_id: str) -> Optional[Channel]:
        """Return the live channel record, or None."""
        self.init()
        return self._channels.get(channel_id)

    def require(self, channel_id: str) -> Channel:
        """Return the live channel record.

        Raises:
            NotFoundError: Unknown channel id
        """
        channel = self.get(channel_id)
        if channel is None:
            raise NotFoundError(f"Channel not found: {channel_id}", channel_id=channel_id)
        return channel

    def get_all(self) -> List[Channel]:
        """All channels in insertion order."""
        self.init()
        with self._lock:
            channels = list(self._channels.values())
        return sorted(channels, key=lambda c: c.seq)

    async def get_all_with_stats(self) -> List[Dict[str, Any]]:
        """All channels (keys masked) joined with their usage aggregate."""
        result = []
        for channel in self.get_all():
            entry = channel.to_public_dict()
            if self._stats is not None:
                summary = await self._stats.get_channel_stats(channel.id)
                entry["stats"] = summary.to_dict()
            else:
                entry["stats"] = None
            result.append(entry)
        return result

    # -------------------------------------------------------------------------
    # Health bookkeeping
    # -------------------------------------------------------------------------

    def mark_success(self, channel_id: str) -> None:
        self._set_status(channel_id, ChannelStatus.ACTIVE, None)

    def mark_failure(self, channel_id: str, error: Optional[str] = None) -> None:
        self._set_status(channel_id, ChannelStatus.ERROR, error)

    def _set_status(
        self,
        channel_id: str,
        status: ChannelStatus,
        error: Optional[str],
    ) -> None:
        """Record an attempt outcome. In memory only; not persisted."""
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is None:
                return
            previous = channel.status
            channel.status = status
            channel.last_health_check = int(time.time() * 1000)
            if status == ChannelStatus.ERROR:
                channel.error_count += 1
                channel.last_error = error
            else:
                channel.error_count = 0
                channel.last_error = None

        if previous != status:
            emit_event(
                GatewayEventType.CHANNEL_STATUS_CHANGED,
                {"from": previous.value, "to": status.value, "error": error},
                channel_id=channel_id,
            )

    def reset_cursor(self, channel_id: Optional[str] = None) -> None:
        """Rewind round-robin cursors for one channel, or all of them."""
        with self._lock:
            if channel_id is None:
                targets = list(self._channels.values())
            else:
                targets = [c for c in self._channels.values() if c.id == channel_id]
            for channel in targets:
                channel.key_cursor = 0
