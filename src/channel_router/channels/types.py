"""Channel types.

A channel is one configured connection to an upstream LLM provider: an
adapter type, a base URL, one or more API keys and the logical models it
serves.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class AdapterType(str, Enum):
    """Provider wire protocol a channel speaks."""

    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"


class ChannelStatus(str, Enum):
    """Last observed health of a channel."""

    UNKNOWN = "unknown"
    ACTIVE = "active"
    ERROR = "error"


class KeyStrategy(str, Enum):
    """How one of a channel's API keys is picked per attempt."""

    ROUND_ROBIN = "round-robin"
    RANDOM = "random"


# Selector tie-break rank within equal priority
STATUS_RANK = {
    ChannelStatus.ACTIVE: 0,
    ChannelStatus.UNKNOWN: 1,
    ChannelStatus.ERROR: 2,
}

# Serves any logical model
WILDCARD_MODEL = "*"

# Observed at runtime and never written to the channel file
HEALTH_FIELDS = ("status", "last_health_check", "error_count", "last_error")


@dataclass
class ApiKeyEntry:
    """One key in a multi-key channel.

    error_count is the number of consecutive failed attempts on this key,
    kept in memory only.
    """

    key: str
    name: str = ""
    enabled: bool = True
    error_count: int = 0


@dataclass
class Channel:
    """A registered provider channel.

    Attributes:
        id: Stable identifier, ``{adapter_type}-{8 hex}`` when generated
        name: Display name
        adapter_type: Provider protocol
        base_url: Normalized API base URL
        api_key: Single key, mutually exclusive with api_keys
        api_keys: Multiple keys for rotation
        key_strategy: Rotation strategy for api_keys
        models: Logical model names served ("*" serves any)
        priority: Lower is preferred
        enabled: Disabled channels are never selected
        status: Last observed health
        last_health_check: Epoch ms of the last attempt outcome
        model_mapping: Logical model -> provider model id
        error_count: Consecutive failures since the last success
        passthrough: Opaque adapter settings (custom_headers,
            headers_template, request_body_template, chat_path, ...)
        key_cursor: Round-robin position, in-memory only
        seq: Insertion order, in-memory only
    """

    id: str
    name: str
    adapter_type: AdapterType
    base_url: str
    api_key: Optional[str] = None
    api_keys: Optional[List[ApiKeyEntry]] = None
    key_strategy: KeyStrategy = KeyStrategy.ROUND_ROBIN
    models: List[str] = field(default_factory=list)
    priority: int = 100
    enabled: bool = True
    status: ChannelStatus = ChannelStatus.UNKNOWN
    last_health_check: Optional[int] = None
    model_mapping: Dict[str, str] = field(default_factory=dict)
    error_count: int = 0
    last_error: Optional[str] = None
    passthrough: Dict[str, Any] = field(default_factory=dict)
    key_cursor: int = 0
    seq: int = 0

    def serves(self, model: str) -> bool:
        """True if this channel lists the logical model (or the wildcard)."""
        return model in self.models or WILDCARD_MODEL in self.models

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with runtime health. Cursor and insertion order are dropped."""
        data = asdict(self)
        data["adapter_type"] = self.adapter_type.value
        data["key_strategy"] = self.key_strategy.value
        data["status"] = self.status.value
        data.pop("key_cursor")
        data.pop("seq")
        if self.api_keys is None:
            data.pop("api_keys")
        if self.api_key is None:
            data.pop("api_key")
        return data

    def to_persisted_dict(self) -> Dict[str, Any]:
        """Serialize for the channel file, without runtime health."""
        data = self.to_dict()
        for name in HEALTH_FIELDS:
            data.pop(name)
        for entry in data.get("api_keys") or []:
            entry.pop("error_count")
        return data

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialize for display, with keys masked."""
        from .keys import mask_key

        data = self.to_dict()
        if "api_key" in data:
            data["api_key"] = mask_key(data["api_key"])
        if "api_keys" in data:
            data["api_keys"] = [
                {**entry, "key": mask_key(entry["key"])} for entry in data["api_keys"]
            ]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], seq: int = 0) -> "Channel":
        """Build a Channel from a persisted mapping.

        Raises:
            ValueError: On unknown adapter, strategy or status values
        """
        api_keys = data.get("api_keys")
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            adapter_type=AdapterType(data["adapter_type"]),
            base_url=data.get("base_url", ""),
            api_key=data.get("api_key") or None,
            api_keys=normalize_api_keys(api_keys) if api_keys is not None else None,
            key_strategy=KeyStrategy(data.get("key_strategy", KeyStrategy.ROUND_ROBIN.value)),
            models=list(data.get("models") or []),
            priority=int(data.get("priority", 100)),
            enabled=bool(data.get("enabled", True)),
            status=ChannelStatus(data.get("status", ChannelStatus.UNKNOWN.value)),
            last_health_check=data.get("last_health_check"),
            model_mapping=dict(data.get("model_mapping") or {}),
            error_count=int(data.get("error_count", 0)),
            last_error=data.get("last_error"),
            passthrough=dict(data.get("passthrough") or {}),
            seq=seq,
        )


def normalize_api_keys(raw: List[Any]) -> List[ApiKeyEntry]:
    """Accept bare strings or mappings; default names to ``Key N``."""
    entries = []
    for i, item in enumerate(raw):
        if isinstance(item, ApiKeyEntry):
            entries.append(item)
        elif isinstance(item, str):
            entries.append(ApiKeyEntry(key=item, name=f"Key {i + 1}"))
        else:
            entries.append(
                ApiKeyEntry(
                    key=item["key"],
                    name=item.get("name") or f"Key {i + 1}",
                    enabled=item.get("enabled", True),
                )
            )
    return entries


@dataclass
class KeySelection:
    """The key chosen for one attempt.

    key_index is -1 for a single-key channel, otherwise the index into the
    channel's api_keys list.
    """

    key: str
    key_index: int
    key_name: str
    strategy: str


@dataclass
class ModelResolution:
    """Outcome of mapping a logical model onto a channel."""

    mapped: bool
    actual_model: str


@dataclass(frozen=True)
class Candidate:
    """One (channel, model) pair the orchestrator may attempt."""

    channel_id: str
    actual_model: str
    logical_model: str
