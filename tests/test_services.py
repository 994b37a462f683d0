"""
Tests for concurrency caps, event sinks and the in-memory stores.
"""

import asyncio
import copy

import pytest

from hybrid_orchestrator.models import Job, JobStatus
from hybrid_orchestrator.services import (
    CompositeEventSink,
    ConcurrencyLimiter,
    EventType,
    InMemoryEventSink,
    InMemoryJobStore,
    NullEventSink,
)


class TestConcurrencyLimiter:

    @pytest.mark.asyncio
    async def test_provider_cap_is_respected(self):
        limiter = ConcurrencyLimiter(max_calls_per_provider=2)

        async def call():
            async with limiter.provider_slot("openai"):
                await asyncio.sleep(0.01)

        await asyncio.gather(*(call() for _ in range(6)))

        assert limiter.peak_calls("openai") == 2
        assert limiter.active_calls("openai") == 0

    @pytest.mark.asyncio
    async def test_provider_override(self):
        limiter = ConcurrencyLimiter(max_calls_per_provider=4, provider_limits={"local": 1})

        async def call(provider_id):
            async with limiter.provider_slot(provider_id):
                await asyncio.sleep(0.01)

        await asyncio.gather(*(call("local") for _ in range(3)), *(call("openai") for _ in range(3)))

        assert limiter.peak_calls("local") == 1
        assert limiter.peak_calls("openai") == 3
        assert limiter.get_statistics()["provider_limits"] == {"local": 1, "openai": 4}

    @pytest.mark.asyncio
    async def test_job_slots_queue_instead_of_failing(self):
        limiter = ConcurrencyLimiter(max_concurrent_jobs=1)
        order = []

        async def job(name):
            async with limiter.job_slot():
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(job("one"), job("two"))

        assert order == ["one-start", "one-end", "two-start", "two-end"]
        assert limiter.get_statistics()["running_jobs"] == 0


class TestEventSinks:

    def test_in_memory_sink_records_and_filters(self):
        sink = InMemoryEventSink()
        sink.emit("j1", EventType.STARTED, {"user_id": "alice"})
        sink.emit("j2", EventType.STARTED, {})
        sink.emit("j1", EventType.FAILED, {"error_code": "TIMEOUT"})

        assert sink.types_for("j1") == [EventType.STARTED, EventType.FAILED]
        assert sink.events_for("j1", EventType.FAILED)[0].payload == {"error_code": "TIMEOUT"}
        assert sink.events[0].to_dict()["type"] == "started"

    def test_in_memory_sink_is_bounded(self):
        sink = InMemoryEventSink(max_events=2)
        for index in range(3):
            sink.emit(str(index), EventType.STARTED, {})
        assert [event.job_id for event in sink.events] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_subscribers_receive_events(self):
        sink = InMemoryEventSink()
        queue = sink.subscribe()
        sink.emit("j1", EventType.COMPLETED, {})

        event = await asyncio.wait_for(queue.get(), timeout=1)
        assert event.event_type == EventType.COMPLETED

        sink.unsubscribe(queue)
        sink.emit("j1", EventType.FAILED, {})
        assert queue.empty()

    def test_composite_delivers_to_every_sink_then_raises(self):
        class Broken(NullEventSink):
            def emit(self, job_id, event_type, payload):
                raise RuntimeError("down")

        healthy = InMemoryEventSink()
        composite = CompositeEventSink([Broken(), healthy])

        with pytest.raises(RuntimeError):
            composite.emit("j1", EventType.STARTED, {})
        assert healthy.types_for("j1") == [EventType.STARTED]


class TestInMemoryJobStore:

    @pytest.mark.asyncio
    async def test_snapshots_are_isolated_copies(self):
        store = InMemoryJobStore()
        job = Job(job_id="j1", user_id="alice", requested_models=["a"])
        await store.upsert_job(job)

        job.transition_to(JobStatus.FAILED)
        stored = await store.get_job("j1")

        assert stored.status == JobStatus.PENDING
        assert await store.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_terminal_snapshot_is_never_overwritten(self):
        store = InMemoryJobStore()
        stale = Job(job_id="j1", user_id="alice", requested_models=["a"])
        final = copy.deepcopy(stale)
        final.transition_to(JobStatus.FAILED)

        await store.upsert_job(final)
        await store.upsert_job(stale)

        assert (await store.get_job("j1")).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_list_filters(self):
        store = InMemoryJobStore()
        for job_id, user_id in (("j1", "alice"), ("j2", "bob"), ("j3", "alice")):
            await store.upsert_job(Job(job_id=job_id, user_id=user_id, requested_models=["a"]))

        alice = await store.list_jobs(user_id="alice")
        assert {job.job_id for job in alice} == {"j1", "j3"}
        assert await store.list_jobs(status=JobStatus.COMPLETED) == []
        assert len(await store.list_jobs(limit=2)) == 2
