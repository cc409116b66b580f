"""Unified YAML configuration for the channel router.

Consolidates settings for the channel store, fallback orchestration, usage
recording, stats aggregation and batch diagnostics into one pydantic model.

Configuration Priority: Environment Variables > YAML > Defaults

Example YAML configuration (channel_router.yaml):

    router:
      channels:
        path: ./data/channels.yaml
      fallback:
        enabled: true
        models: [gpt-4o-mini, claude-3-5-haiku-20241022]
        max_retries: 3
        retry_delay_ms: 500
        notify_on_fallback: true
      stats:
        redis_url: ${REDIS_URL}
      batch_test:
        concurrency: 3
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# .env is read once at import; real environment variables still win
load_dotenv()


# =============================================================================
# Sub-configuration Models
# =============================================================================


class ChannelStoreConfig(BaseModel):
    """Where channel records are persisted."""

    path: str = Field(default="channels.yaml")
    default_priority: int = Field(default=100, ge=0)
    # Keys failing this many times in a row are skipped while a healthy key remains
    max_key_errors: int = Field(default=10, ge=1)


class FallbackConfig(BaseModel):
    """Fallback orchestration for one chat request."""

    enabled: bool = False
    models: List[str] = Field(default_factory=list)
    max_retries: int = Field(default=3, ge=0, le=20)
    retry_delay_ms: int = Field(default=500, ge=0, le=60000)
    notify_on_fallback: bool = True
    request_timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @field_validator("models")
    @classmethod
    def strip_models(cls, v: List[str]) -> List[str]:
        """Drop blanks and duplicates while keeping order."""
        seen = []
        for model in v:
            model = model.strip()
            if model and model not in seen:
                seen.append(model)
        return seen


class TruncationConfig(BaseModel):
    """Caps applied to request/response payloads kept on usage records."""

    max_message_chars: int = Field(default=500, ge=1)
    max_tools: int = Field(default=20, ge=1)
    max_response_chars: int = Field(default=2000, ge=1)


class UsageConfig(BaseModel):
    """Usage record retention."""

    max_records: int = Field(default=10000, ge=1)
    memory_records: int = Field(default=100, ge=1)
    estimate_tokens: bool = True
    tokenizer_encoding: str = Field(default="cl100k_base")
    tokenizer_load_timeout_seconds: float = Field(default=5.0, gt=0)
    truncation: TruncationConfig = Field(default_factory=TruncationConfig)


class StatsTTLConfig(BaseModel):
    """Bucket lifetimes in days, refreshed on every write."""

    daily_days: int = Field(default=30, ge=1)
    hourly_days: int = Field(default=7, ge=1)
    channel_days: int = Field(default=90, ge=1)
    user_days: int = Field(default=90, ge=1)


class StatsConfig(BaseModel):
    """Aggregate store settings. No redis_url means memory-only stats."""

    redis_url: Optional[str] = None
    key_prefix: str = Field(default="channel_router:usage")
    timeout_seconds: float = Field(default=2.0, gt=0)
    ttl: StatsTTLConfig = Field(default_factory=StatsTTLConfig)

    @field_validator("redis_url")
    @classmethod
    def blank_url_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class BatchTestConfig(BaseModel):
    """Batch diagnostic driver settings."""

    concurrency: int = Field(default=3, ge=1, le=50)
    poll_interval_ms: int = Field(default=50, ge=1, le=5000)
    probe_message: str = Field(default="Hello")
    max_tokens: int = Field(default=50, ge=1)


class AdapterConfig(BaseModel):
    """HTTP settings shared by provider adapters."""

    timeout_seconds: float = Field(default=120.0, ge=1.0, le=3600.0)


class ObservabilityConfig(BaseModel):
    """Event retention and per-record logging."""

    log_usage_records: bool = True
    max_events: int = Field(default=1000, ge=1)


# =============================================================================
# Main Unified Configuration
# =============================================================================


class UnifiedConfig(BaseModel):
    """Unified configuration for the channel router."""

    channels: ChannelStoreConfig = Field(default_factory=ChannelStoreConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    usage: UsageConfig = Field(default_factory=UsageConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    batch_test: BatchTestConfig = Field(default_factory=BatchTestConfig)
    adapters: AdapterConfig = Field(default_factory=AdapterConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @model_validator(mode="after")
    def memory_within_ring(self) -> "UnifiedConfig":
        """The memory cache never holds more than the durable ring."""
        if self.usage.memory_records > self.usage.max_records:
            self.usage.memory_records = self.usage.max_records
        return self

    def to_yaml(self) -> str:
        """Render as a `router:` document that load_config() reads back."""
        return yaml.safe_dump({"router": self.to_dict()}, sort_keys=False)

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict without unset optional fields."""
        return self.model_dump(exclude_none=True)


# =============================================================================
# Loading
# =============================================================================

CONFIG_FILENAME = "channel_router.yaml"

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


def _substitute_env_vars(value: Any) -> Any:
    """Expand ``${NAME}`` references in every string of a parsed YAML tree.

    Unset variables expand to an empty string.
    """
    if isinstance(value, str):
        return _ENV_REF.sub(lambda match: os.getenv(match.group(1), ""), value)
    if isinstance(value, dict):
        return {key: _substitute_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def load_config(
    config_path: Optional[Path] = None,
    strict: bool = False,
) -> UnifiedConfig:
    """Read the ``router`` section of a YAML file.

    Args:
        config_path: File to read; None or a missing file gives defaults
        strict: Raise on unreadable or invalid files instead of returning
                defaults

    Raises:
        ValueError: Only when strict is set
    """
    if config_path is None or not config_path.exists():
        return UnifiedConfig()

    try:
        document = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        section = _substitute_env_vars(document).get("router") or {}
        return UnifiedConfig(**section)
    except yaml.YAMLError as e:
        problem = f"Invalid YAML: {e}"
    except Exception as e:
        problem = f"Configuration error: {e}"

    if strict:
        raise ValueError(problem)
    return UnifiedConfig()


def _find_config_file() -> Optional[Path]:
    """First existing file among CHANNEL_ROUTER_CONFIG, ./channel_router.yaml
    and ~/.config/channel-router/channel_router.yaml."""
    candidates = []
    explicit = os.getenv("CHANNEL_ROUTER_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    candidates.append(Path.cwd() / CONFIG_FILENAME)
    candidates.append(Path.home() / ".config" / "channel-router" / CONFIG_FILENAME)

    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _env_flag(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _env_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",")]


# (variable, section, field, parser); later rows win
_ENV_OVERRIDES = (
    ("CHANNEL_ROUTER_CHANNELS_PATH", "channels", "path", str),
    ("CHANNEL_ROUTER_FALLBACK_ENABLED", "fallback", "enabled", _env_flag),
    ("CHANNEL_ROUTER_FALLBACK_MODELS", "fallback", "models", _env_list),
    ("CHANNEL_ROUTER_MAX_RETRIES", "fallback", "max_retries", int),
    ("CHANNEL_ROUTER_RETRY_DELAY_MS", "fallback", "retry_delay_ms", int),
    ("CHANNEL_ROUTER_REQUEST_TIMEOUT", "fallback", "request_timeout_seconds", float),
    ("REDIS_URL", "stats", "redis_url", str),
    ("CHANNEL_ROUTER_REDIS_URL", "stats", "redis_url", str),
    ("CHANNEL_ROUTER_BATCH_CONCURRENCY", "batch_test", "concurrency", int),
    ("CHANNEL_ROUTER_ADAPTER_TIMEOUT", "adapters", "timeout_seconds", float),
)


def _apply_env_overrides(config: UnifiedConfig) -> UnifiedConfig:
    """Overlay CHANNEL_ROUTER_* variables (and REDIS_URL) on a loaded config."""
    values = config.to_dict()
    for variable, section, name, parse in _ENV_OVERRIDES:
        raw = os.getenv(variable)
        if raw:
            values.setdefault(section, {})[name] = parse(raw)
    return UnifiedConfig(**values)


def get_effective_config(config_path: Optional[Path] = None) -> UnifiedConfig:
    """Defaults, then the YAML file, then the environment.

    Args:
        config_path: Explicit file; searched for when None
    """
    return _apply_env_overrides(load_config(config_path or _find_config_file()))


# =============================================================================
# Process-wide instance
# =============================================================================

_global_config: Optional[UnifiedConfig] = None


def get_config() -> UnifiedConfig:
    """Effective configuration, loaded once per process."""
    global _global_config
    if _global_config is None:
        _global_config = get_effective_config()
    return _global_config


def reload_config() -> UnifiedConfig:
    """Discard the cached configuration and load it again."""
    global _global_config
    _global_config = None
    return get_config()
