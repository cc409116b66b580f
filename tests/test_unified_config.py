"""Tests for the unified YAML configuration.

Priority: environment variables > YAML > defaults.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from channel_router.unified_config import (
    BatchTestConfig,
    FallbackConfig,
    StatsConfig,
    UnifiedConfig,
    UsageConfig,
    get_effective_config,
    load_config,
)


class TestUnifiedConfigSchema:
    """Pydantic schema defaults and validation."""

    def test_default_config_is_valid(self):
        config = UnifiedConfig()
        assert config.channels.path == "channels.yaml"
        assert config.channels.default_priority == 100

    def test_fallback_defaults(self):
        """Fallback is opt-in with a three-retry budget."""
        config = UnifiedConfig()
        assert config.fallback.enabled is False
        assert config.fallback.models == []
        assert config.fallback.max_retries == 3
        assert config.fallback.retry_delay_ms == 500
        assert config.fallback.notify_on_fallback is True
        assert config.fallback.request_timeout_seconds is None

    def test_usage_and_stats_defaults(self):
        config = UnifiedConfig()
        assert config.usage.max_records == 10000
        assert config.usage.memory_records == 100
        assert config.usage.truncation.max_message_chars == 500
        assert config.stats.redis_url is None
        assert config.stats.ttl.daily_days == 30
        assert config.stats.ttl.hourly_days == 7

    def test_timeout_and_key_threshold_defaults(self):
        config = UnifiedConfig()
        assert config.channels.max_key_errors == 10
        assert config.stats.timeout_seconds == 2.0
        assert config.usage.tokenizer_load_timeout_seconds == 5.0

    def test_batch_defaults(self):
        config = UnifiedConfig()
        assert config.batch_test.concurrency == 3
        assert config.batch_test.probe_message == "Hello"

    def test_fallback_models_deduplicated(self):
        config = FallbackConfig(models=["gpt-x", " gpt-x ", "", "claude-y"])
        assert config.models == ["gpt-x", "claude-y"]

    def test_blank_redis_url_is_none(self):
        assert StatsConfig(redis_url="  ").redis_url is None

    def test_memory_capped_by_ring(self):
        config = UnifiedConfig(usage=UsageConfig(memory_records=500, max_records=50))
        assert config.usage.memory_records == 50

    def test_bounds_enforced(self):
        with pytest.raises(ValidationError):
            FallbackConfig(max_retries=-1)
        with pytest.raises(ValidationError):
            BatchTestConfig(concurrency=0)
        with pytest.raises(ValidationError):
            FallbackConfig(request_timeout_seconds=0)

    def test_yaml_round_trip_section(self):
        text = UnifiedConfig().to_yaml()
        assert text.startswith("router:")


class TestYAMLLoading:
    """load_config reads the ``router`` section."""

    def test_load_config_from_yaml(self, tmp_path):
        config_file = tmp_path / "channel_router.yaml"
        config_file.write_text(
            """
router:
  channels:
    path: /var/lib/router/channels.yaml
  fallback:
    enabled: true
    models: [gpt-x, claude-y]
    max_retries: 5
"""
        )

        config = load_config(config_file)

        assert config.channels.path == "/var/lib/router/channels.yaml"
        assert config.fallback.enabled is True
        assert config.fallback.models == ["gpt-x", "claude-y"]
        assert config.fallback.max_retries == 5

    def test_load_config_from_nonexistent_file(self, tmp_path):
        config = load_config(tmp_path / "nonexistent.yaml")
        assert config == UnifiedConfig()

    def test_empty_file_gives_defaults(self, tmp_path):
        config_file = tmp_path / "channel_router.yaml"
        config_file.write_text("")
        assert load_config(config_file) == UnifiedConfig()

    def test_invalid_yaml_returns_default(self, tmp_path):
        config_file = tmp_path / "channel_router.yaml"
        config_file.write_text("router: [unclosed")

        assert load_config(config_file) == UnifiedConfig()
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(config_file, strict=True)

    def test_invalid_values_strict(self, tmp_path):
        config_file = tmp_path / "channel_router.yaml"
        config_file.write_text("router:\n  batch_test:\n    concurrency: 500\n")

        assert load_config(config_file).batch_test.concurrency == 3
        with pytest.raises(ValueError, match="Configuration error"):
            load_config(config_file, strict=True)

    def test_env_var_substitution(self, tmp_path):
        config_file = tmp_path / "channel_router.yaml"
        config_file.write_text("router:\n  stats:\n    redis_url: ${TEST_REDIS_URL}\n")

        with patch.dict(os.environ, {"TEST_REDIS_URL": "redis://cache:6379/2"}):
            config = load_config(config_file)

        assert config.stats.redis_url == "redis://cache:6379/2"

    def test_unset_substitution_means_memory_only(self, tmp_path):
        config_file = tmp_path / "channel_router.yaml"
        config_file.write_text("router:\n  stats:\n    redis_url: ${UNSET_REDIS_URL_FOR_TEST}\n")

        assert load_config(config_file).stats.redis_url is None


class TestEnvironmentOverrides:
    """Environment variables win over YAML."""

    def test_env_overrides_yaml(self, tmp_path):
        config_file = tmp_path / "channel_router.yaml"
        config_file.write_text("router:\n  fallback:\n    enabled: false\n    max_retries: 1\n")

        env = {
            "CHANNEL_ROUTER_FALLBACK_ENABLED": "true",
            "CHANNEL_ROUTER_MAX_RETRIES": "7",
            "CHANNEL_ROUTER_FALLBACK_MODELS": "gpt-x, claude-y",
        }
        with patch.dict(os.environ, env):
            config = get_effective_config(config_file)

        assert config.fallback.enabled is True
        assert config.fallback.max_retries == 7
        assert config.fallback.models == ["gpt-x", "claude-y"]

    def test_redis_url_fallback_variable(self):
        with patch.dict(os.environ, {"REDIS_URL": "redis://plain:6379"}):
            assert get_effective_config(Path("/nonexistent.yaml")).stats.redis_url == "redis://plain:6379"

        env = {"REDIS_URL": "redis://plain:6379", "CHANNEL_ROUTER_REDIS_URL": "redis://own:6379"}
        with patch.dict(os.environ, env):
            assert get_effective_config(Path("/nonexistent.yaml")).stats.redis_url == "redis://own:6379"

    def test_numeric_overrides(self):
        env = {
            "CHANNEL_ROUTER_RETRY_DELAY_MS": "0",
            "CHANNEL_ROUTER_REQUEST_TIMEOUT": "12.5",
            "CHANNEL_ROUTER_BATCH_CONCURRENCY": "8",
            "CHANNEL_ROUTER_ADAPTER_TIMEOUT": "30",
            "CHANNEL_ROUTER_CHANNELS_PATH": "/tmp/ch.yaml",
        }
        with patch.dict(os.environ, env):
            config = get_effective_config(Path("/nonexistent.yaml"))

        assert config.fallback.retry_delay_ms == 0
        assert config.fallback.request_timeout_seconds == 12.5
        assert config.batch_test.concurrency == 8
        assert config.adapters.timeout_seconds == 30
        assert config.channels.path == "/tmp/ch.yaml"


class TestConfigDiscovery:
    """Standard file locations."""

    def test_find_config_in_current_directory(self, tmp_path, monkeypatch):
        (tmp_path / "channel_router.yaml").write_text("router:\n  batch_test:\n    concurrency: 9\n")
        monkeypatch.chdir(tmp_path)

        assert get_effective_config().batch_test.concurrency == 9

    def test_find_config_in_home_directory(self, tmp_path, monkeypatch):
        config_dir = tmp_path / ".config" / "channel-router"
        config_dir.mkdir(parents=True)
        (config_dir / "channel_router.yaml").write_text("router:\n  fallback:\n    max_retries: 2\n")
        work_dir = tmp_path / "work"
        work_dir.mkdir()
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.chdir(work_dir)

        assert get_effective_config().fallback.max_retries == 2

    def test_explicit_config_path_via_env_var(self, tmp_path, monkeypatch):
        config_file = tmp_path / "custom.yaml"
        config_file.write_text("router:\n  channels:\n    default_priority: 7\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CHANNEL_ROUTER_CONFIG", str(config_file))

        assert get_effective_config().channels.default_priority == 7
