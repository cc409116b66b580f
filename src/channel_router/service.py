"""Process-wide wiring of the routing components.

Builds one ChannelStore, UsageRecorder, orchestrator and diagnostics set
from a UnifiedConfig. The HTTP server and embedding applications share the
instance returned by get_services().
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .channels.keys import KeyRotator
from .channels.selector import ChannelSelector
from .channels.store import ChannelStore
from .diagnostics.batch import BatchTester
from .diagnostics.probe import ChannelProbe
from .events import set_max_events
from .routing.orchestrator import FallbackOrchestrator
from .unified_config import UnifiedConfig, get_config
from .usage.backend import RedisUsageBackend
from .usage.recorder import UsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The component graph for one router process."""

    config: UnifiedConfig
    store: ChannelStore
    recorder: UsageRecorder
    selector: ChannelSelector
    rotator: KeyRotator
    orchestrator: FallbackOrchestrator
    probe: ChannelProbe
    batch: BatchTester

    @classmethod
    def from_config(cls, config: UnifiedConfig) -> "Services":
        backend = None
        if config.stats.redis_url:
            backend = RedisUsageBackend(config.stats.redis_url, prefix=config.stats.key_prefix)
            logger.info(f"Usage stats backed by Redis (prefix {config.stats.key_prefix})")
        else:
            logger.info("No Redis URL configured; usage stats kept in memory")

        recorder = UsageRecorder(
            backend=backend,
            config=config.usage,
            ttl=config.stats.ttl,
            log_records=config.observability.log_usage_records,
            backend_timeout=config.stats.timeout_seconds,
        )
        store = ChannelStore(
            Path(config.channels.path),
            stats=recorder.aggregator,
            default_priority=config.channels.default_priority,
        )
        store.init()
        set_max_events(config.observability.max_events)

        rotator = KeyRotator(lock=store.lock, max_key_errors=config.channels.max_key_errors)
        selector = ChannelSelector(store)
        timeout = config.adapters.timeout_seconds
        return cls(
            config=config,
            store=store,
            recorder=recorder,
            selector=selector,
            rotator=rotator,
            orchestrator=FallbackOrchestrator(
                store,
                recorder,
                config=config.fallback,
                selector=selector,
                rotator=rotator,
                adapter_timeout=timeout,
            ),
            probe=ChannelProbe(store, recorder, rotator=rotator),
            batch=BatchTester(
                store,
                recorder,
                rotator=rotator,
                config=config.batch_test,
                adapter_timeout=timeout,
            ),
        )


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    """Get the shared component graph, building it from get_config() on first use."""
    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                _services = Services.from_config(get_config())
    return _services


def set_services(services: Optional[Services]) -> None:
    """Replace the shared component graph (tests, embedding)."""
    global _services
    with _services_lock:
        _services = services


def reset_services() -> None:
    set_services(None)
