"""Tests for concurrency-limited batch model testing."""

import asyncio

import pytest


@pytest.fixture
def tester(store, recorder, client_factory):
    from channel_router.diagnostics import BatchTester
    from channel_router.unified_config import BatchTestConfig

    return BatchTester(
        store,
        recorder,
        client_factory=client_factory,
        config=BatchTestConfig(poll_interval_ms=5),
    )


async def collect(stream):
    return [event async for event in stream]


def names(events):
    return [e.event for e in events]


class TestEventSequence:
    """Event order and payloads of a full run."""

    @pytest.mark.asyncio
    async def test_full_run(self, tester, make_channel):
        channel = make_channel("a", models=["m1", "m2"])

        events = await collect(tester.run_batch(channel.id, test_id="t1"))

        assert names(events)[:2] == ["clear", "start"]
        assert names(events)[-1] == "complete"
        assert names(events).count("testing") == 2
        assert names(events).count("result") == 2
        assert names(events).count("progress") == 2

        start = events[1].data
        assert start == {
            "test_id": "t1",
            "total": 2,
            "channel_id": channel.id,
            "channel_name": "a",
            "concurrency": 3,
        }

        complete = events[-1].data
        assert complete["success"] == 2
        assert complete["failed"] == 0
        assert complete["aborted"] is False
        assert [r["model"] for r in complete["results"]] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_no_clear_event(self, tester, make_channel):
        channel = make_channel("a", models=["m1"])

        events = await collect(tester.run_batch(channel.id, clear_previous=False))

        assert names(events)[0] == "start"

    @pytest.mark.asyncio
    async def test_last_progress_counts(self, tester, client_factory, make_channel):
        channel = make_channel("a", models=["good", "bad"])
        client_factory.default = lambda model: RuntimeError("boom") if model == "bad" else "hi"

        events = await collect(tester.run_batch(channel.id))

        last = [e.data for e in events if e.event == "progress"][-1]
        assert last == {
            "completed": 2,
            "total": 2,
            "running": 0,
            "success_count": 1,
            "fail_count": 1,
        }

    @pytest.mark.asyncio
    async def test_result_payloads(self, tester, client_factory, make_channel):
        channel = make_channel("a", models=["good", "bad"])
        client_factory.default = lambda model: RuntimeError("boom") if model == "bad" else "x" * 150

        events = await collect(tester.run_batch(channel.id))
        results = {e.data["model"]: e.data for e in events if e.event == "result"}

        assert results["good"]["success"] is True
        assert len(results["good"]["response"]) == 100
        assert results["good"]["key_info"] is None
        assert results["bad"]["success"] is False
        assert results["bad"]["error"] == "boom"
        assert "response" not in results["bad"]


class TestConcurrency:
    """In-flight tests never exceed the limit."""

    @pytest.mark.asyncio
    async def test_limit_respected(self, tester, client_factory, make_channel):
        models = [f"m{i}" for i in range(10)]
        channel = make_channel("a", models=models)
        running = 0
        peak = 0

        async def behave(model):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return "ok"

        client_factory.default = behave

        events = await collect(tester.run_batch(channel.id, concurrency=3))

        assert peak <= 3
        assert max(e.data["running"] for e in events if e.event == "testing") <= 3
        complete = events[-1].data
        assert complete["success"] == 10
        assert [r["index"] for r in complete["results"]] == list(range(10))

    @pytest.mark.asyncio
    async def test_concurrency_one_is_sequential(self, tester, client_factory, slow, make_channel):
        channel = make_channel("a", models=["m0", "m1", "m2"])
        client_factory.default = slow("ok")

        events = await collect(tester.run_batch(channel.id, concurrency=1))

        order = [e.event for e in events if e.event in ("testing", "result")]
        assert order == ["testing", "result"] * 3


class TestStop:
    """Aborting a running batch."""

    @pytest.mark.asyncio
    async def test_stop_after_two_results(self, tester, client_factory, slow, make_channel):
        from channel_router.events import GatewayEventType, get_events

        channel = make_channel("a", models=[f"m{i}" for i in range(10)])
        client_factory.default = slow("ok", delay=0.02)

        events = []
        seen_results = 0
        stopped_at = None
        async for event in tester.run_batch(channel.id, concurrency=3, test_id="t-stop"):
            events.append(event)
            if event.event == "result":
                seen_results += 1
                if seen_results == 2 and stopped_at is None:
                    assert tester.stop("t-stop") == 1
                    stopped_at = len(events)

        assert names(events[stopped_at:]) == ["complete"]
        complete = events[-1].data
        assert complete["aborted"] is True
        assert len(complete["results"]) <= 10
        indices = [r["index"] for r in complete["results"]]
        assert len(indices) == len(set(indices))
        first_two = [e.data["index"] for e in events if e.event == "result"]
        assert set(first_two) <= set(indices)
        assert len(get_events(GatewayEventType.BATCH_TEST_STOPPED)) == 1
        assert tester.active_tests() == []

    @pytest.mark.asyncio
    async def test_stop_all(self, tester, client_factory, slow, make_channel):
        a = make_channel("a", models=["m0", "m1", "m2", "m3"])
        b = make_channel("b", models=["m0", "m1", "m2", "m3"])
        client_factory.default = slow("ok", delay=0.02)

        first = tester.run_batch(a.id, concurrency=1, test_id="ta")
        second = tester.run_batch(b.id, concurrency=1, test_id="tb")
        # Advance both to their first test so they register as active
        for stream in (first, second):
            while (await stream.__anext__()).event != "testing":
                pass

        assert {t["id"] for t in tester.active_tests()} == {"ta", "tb"}
        assert tester.stop() == 2

        rest_a = await collect(first)
        rest_b = await collect(second)
        assert rest_a[-1].data["aborted"] is True
        assert rest_b[-1].data["aborted"] is True
        assert len(rest_a[-1].data["results"]) == 1

    @pytest.mark.asyncio
    async def test_stop_unknown_id(self, tester):
        assert tester.stop("nope") == 0


class TestKeysAndRecords:
    """Key previews and usage records."""

    @pytest.mark.asyncio
    async def test_preview_does_not_advance_cursor(self, tester, client_factory, store, make_channel):
        channel = make_channel("a", api_keys=["k0", "k1"], models=["m0", "m1", "m2"])

        events = await collect(tester.run_batch(channel.id))

        assert {api_key for _, _, api_key in client_factory.calls} == {"k0"}
        assert store.require(channel.id).key_cursor == 0
        results = events[-1].data["results"]
        assert all(r["key_info"] == {"name": "Key 1", "index": 0} for r in results)

    @pytest.mark.asyncio
    async def test_records_tagged_batch_test(self, tester, client_factory, recorder, make_channel):
        channel = make_channel("a", models=["good", "bad"], model_mapping={"good": "good-v2"})
        client_factory.default = lambda model: RuntimeError("boom") if model == "bad" else "hi"

        await collect(tester.run_batch(channel.id))

        records = {r.model: r for r in recorder.recent()}
        assert {r.source for r in records.values()} == {"batch-test"}
        assert records["good"].actual_model == "good-v2"
        assert records["good"].success is True
        assert records["bad"].success is False
        assert records["bad"].error == "boom"

    @pytest.mark.asyncio
    async def test_mapped_model_sent_upstream(self, tester, client_factory, make_channel):
        channel = make_channel("a", models=["gpt-x"], model_mapping={"gpt-x": "gpt-x-0806"})

        await collect(tester.run_batch(channel.id))

        assert [model for _, model, _ in client_factory.calls] == ["gpt-x-0806"]


class TestModelResolution:
    """Which models a batch covers."""

    def test_explicit_list(self, tester, make_channel):
        channel = make_channel("a", models=["m0"])

        assert tester.resolve_models(channel.id, ["x", "y"]) == ["x", "y"]

    def test_channel_models_without_wildcard(self, tester, make_channel):
        channel = make_channel("a", models=["*", "m0", "m1"])

        assert tester.resolve_models(channel.id) == ["m0", "m1"]

    @pytest.mark.asyncio
    async def test_wildcard_only_rejected(self, tester, make_channel):
        from channel_router.errors import ValidationError

        channel = make_channel("a", models=["*"])

        with pytest.raises(ValidationError):
            await collect(tester.run_batch(channel.id))

    @pytest.mark.asyncio
    async def test_unknown_channel(self, tester):
        from channel_router.errors import NotFoundError

        with pytest.raises(NotFoundError):
            await collect(tester.run_batch("missing"))
