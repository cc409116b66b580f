"""Tests for the gateway event log."""

import logging


class TestEventLog:
    def test_emit_and_filter(self):
        from channel_router.events import GatewayEventType, emit_event, get_events

        emit_event(GatewayEventType.FALLBACK_TRIGGERED, {"from": "a", "to": "b"}, channel_id="a")
        emit_event(GatewayEventType.STATS_CLEARED, {"deleted_keys": 0})

        assert len(get_events()) == 2
        [fallback] = get_events(GatewayEventType.FALLBACK_TRIGGERED)
        assert fallback.channel_id == "a"
        assert fallback.data == {"from": "a", "to": "b"}
        assert fallback.timestamp.tzinfo is not None

    def test_retention_cap(self):
        from channel_router.events import (
            GatewayEventType,
            emit_event,
            get_events,
            set_max_events,
        )

        set_max_events(3)
        for i in range(5):
            emit_event(GatewayEventType.CHANNEL_EXCLUDED, {"n": i})

        assert [e.data["n"] for e in get_events()] == [2, 3, 4]

    def test_lowering_cap_trims(self):
        from channel_router.events import GatewayEventType, emit_event, get_events, set_max_events

        for i in range(4):
            emit_event(GatewayEventType.CHANNEL_EXCLUDED, {"n": i})
        set_max_events(2)

        assert [e.data["n"] for e in get_events()] == [2, 3]

    def test_events_are_logged(self, caplog):
        from channel_router.events import GatewayEventType, emit_event

        with caplog.at_level(logging.INFO, logger="channel_router.events"):
            emit_event(GatewayEventType.BATCH_TEST_STARTED, {"test_id": "t1"}, channel_id="c1")

        assert "batch_test_started" in caplog.text
        assert "channel=c1" in caplog.text

    def test_clear(self):
        from channel_router.events import GatewayEventType, clear_events, emit_event, get_events

        emit_event(GatewayEventType.STATS_CLEARED, {})
        clear_events()

        assert get_events() == []
