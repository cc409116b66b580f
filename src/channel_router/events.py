"""Gateway observability events.

Routing decisions that an operator wants to audit (fallback switches,
channel health transitions, batch diagnostic lifecycle, stats backend
degradation) are emitted here. Events are kept in a bounded in-memory list
and always logged through the ``channel_router.events`` logger.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class GatewayEventType(Enum):
    """Types of events emitted by the routing core."""

    # Fallback orchestration
    FALLBACK_TRIGGERED = "fallback_triggered"
    FALLBACK_EXHAUSTED = "fallback_exhausted"
    CHANNEL_EXCLUDED = "channel_excluded"

    # Channel health
    CHANNEL_STATUS_CHANGED = "channel_status_changed"

    # Batch diagnostics
    BATCH_TEST_STARTED = "batch_test_started"
    BATCH_TEST_STOPPED = "batch_test_stopped"
    BATCH_TEST_COMPLETE = "batch_test_complete"

    # Stats backend
    STATS_BACKEND_DEGRADED = "stats_backend_degraded"
    STATS_CLEARED = "stats_cleared"


@dataclass
class GatewayEvent:
    """One emitted event."""

    event_type: GatewayEventType
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    channel_id: Optional[str] = None


_MAX_EVENTS = 1000

_events: List[GatewayEvent] = []
_events_lock = threading.Lock()

logger = logging.getLogger("channel_router.events")


def emit_event(
    event_type: GatewayEventType,
    data: Dict[str, Any],
    channel_id: Optional[str] = None,
) -> GatewayEvent:
    """Record and log an event.

    Args:
        event_type: Type of event
        data: Event-specific data
        channel_id: Channel the event concerns, if any

    Returns:
        The emitted GatewayEvent
    """
    event = GatewayEvent(event_type=event_type, data=data, channel_id=channel_id)
    with _events_lock:
        _events.append(event)
        if len(_events) > _MAX_EVENTS:
            del _events[: len(_events) - _MAX_EVENTS]

    logger.info(
        "Gateway event: %s channel=%s data=%s",
        event_type.value,
        channel_id,
        data,
    )
    return event


def get_events(event_type: Optional[GatewayEventType] = None) -> List[GatewayEvent]:
    """Get emitted events in emission order, optionally filtered by type."""
    with _events_lock:
        events = list(_events)
    if event_type is not None:
        events = [e for e in events if e.event_type == event_type]
    return events


def clear_events() -> None:
    """Clear all recorded events."""
    with _events_lock:
        _events.clear()


def set_max_events(limit: int) -> None:
    """Change the retention cap (from ObservabilityConfig.max_events)."""
    global _MAX_EVENTS
    with _events_lock:
        _MAX_EVENTS = max(1, limit)
        if len(_events) > _MAX_EVENTS:
            del _events[: len(_events) - _MAX_EVENTS]


__all__ = [
    "GatewayEvent",
    "GatewayEventType",
    "emit_event",
    "get_events",
    "clear_events",
    "set_max_events",
]
