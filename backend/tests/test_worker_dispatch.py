import asyncio
import logging

import pytest

from storyforge.core import metrics
from storyforge.core.errors import HandlerRegistrationError, PermanentJobError
from storyforge.jobs.context import build_handler_map
from storyforge.jobs.handlers import handlers_for
from storyforge.models.jobs import JobStatus
from storyforge.queues import registry
from storyforge.queues.client import JobOptions, QueueClient
from storyforge.workers import dispatch
from storyforge.workers.dispatch import Worker, validate_handlers
from storyforge.workers.limiter import LimiterOptions


async def _noop(ctx):
    return {"ok": True}


def _cleanup_handlers(**overrides):
    handlers = {
        registry.JOB_CLEANUP_EXPIRED_MEDIA: _noop,
        registry.JOB_CLEANUP_TRENDING_TOPICS: _noop,
    }
    handlers.update(overrides)
    return handlers


async def _run_until(worker: Worker, stop: asyncio.Event, condition, timeout: float = 5.0) -> None:
    task = asyncio.create_task(worker.run(stop))
    try:
        deadline = asyncio.get_running_loop().time() + timeout
        while not condition():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("worker did not reach the expected state in time")
            await asyncio.sleep(0.02)
    finally:
        stop.set()
        await asyncio.wait_for(task, timeout=timeout)


def test_handler_maps_cover_exactly_the_declared_jobs() -> None:
    for queue_name in registry.ALL_QUEUES:
        handlers = handlers_for(queue_name)
        assert set(handlers) == registry.declared_jobs(queue_name)
        validate_handlers(queue_name, handlers)
    with pytest.raises(ValueError):
        handlers_for("nope")


def test_validate_handlers_rejects_bad_maps() -> None:
    with pytest.raises(HandlerRegistrationError):
        validate_handlers(registry.CLEANUP_QUEUE, {})
    with pytest.raises(HandlerRegistrationError):
        validate_handlers("unknown-queue", {"x": _noop})
    with pytest.raises(HandlerRegistrationError, match="no handler"):
        validate_handlers(registry.CLEANUP_QUEUE, {registry.JOB_CLEANUP_EXPIRED_MEDIA: _noop})
    with pytest.raises(HandlerRegistrationError, match="does not accept"):
        validate_handlers(registry.CLEANUP_QUEUE, _cleanup_handlers(**{"generate-story": _noop}))
    with pytest.raises(HandlerRegistrationError, match="not callable"):
        validate_handlers(registry.CLEANUP_QUEUE, _cleanup_handlers(**{registry.JOB_CLEANUP_EXPIRED_MEDIA: "nope"}))


def test_build_handler_map_refuses_duplicates() -> None:
    with pytest.raises(HandlerRegistrationError):
        build_handler_map([("a", _noop), ("a", _noop)])
    with pytest.raises(HandlerRegistrationError):
        build_handler_map([("  ", _noop)])


def test_worker_rejects_unknown_event() -> None:
    worker = Worker(QueueClient(None), registry.CLEANUP_QUEUE, _cleanup_handlers())
    with pytest.raises(ValueError):
        worker.on("stalled", lambda ctx, value: None)


@pytest.mark.anyio("asyncio")
async def test_worker_completes_jobs_and_emits_events(queue_client: QueueClient, caplog: pytest.LogCaptureFixture) -> None:
    seen = []

    async def _handler(ctx):
        assert ctx.payload == {"batchSize": 5}
        return {"expired": 0}

    handle = await queue_client.enqueue(
        registry.CLEANUP_QUEUE,
        registry.JOB_CLEANUP_EXPIRED_MEDIA,
        {"batchSize": 5},
        JobOptions(remove_on_complete=False),
    )
    worker = Worker(
        queue_client,
        registry.CLEANUP_QUEUE,
        _cleanup_handlers(**{registry.JOB_CLEANUP_EXPIRED_MEDIA: _handler}),
        poll_interval_seconds=0.05,
    )
    worker.on("completed", lambda ctx, result: seen.append((ctx.job_id, result)))

    caplog.set_level(logging.INFO, logger=dispatch.__name__)
    await _run_until(worker, asyncio.Event(), lambda: bool(seen))

    assert seen == [(handle.id, {"expired": 0})]
    stored = await queue_client.get_job(handle.id)
    assert stored is not None and stored.status == JobStatus.completed
    assert stored.result == {"expired": 0}
    assert metrics.snapshot()["jobs_completed:cleanup"] == 1
    assert any(record.getMessage() == "queue_job_completed" for record in caplog.records)


@pytest.mark.anyio("asyncio")
async def test_unknown_job_name_is_dead_lettered(queue_client: QueueClient, caplog: pytest.LogCaptureFixture) -> None:
    dead = []
    handle = await queue_client.enqueue(registry.CLEANUP_QUEUE, "cleanup-everything", {})
    worker = Worker(queue_client, registry.CLEANUP_QUEUE, _cleanup_handlers(), poll_interval_seconds=0.05)
    worker.on("dead", lambda ctx, exc: dead.append(exc))

    caplog.set_level(logging.INFO, logger=dispatch.__name__)
    await _run_until(worker, asyncio.Event(), lambda: bool(dead))

    stored = await queue_client.get_job(handle.id)
    assert stored is not None
    assert stored.status == JobStatus.dead
    assert stored.error_code == "unknown_job"
    assert metrics.snapshot()["jobs_dead"] == 1
    assert any(record.getMessage() == "queue_job_dead_lettered" for record in caplog.records)


@pytest.mark.anyio("asyncio")
async def test_transient_failure_is_scheduled_for_retry(queue_client: QueueClient) -> None:
    failures = []

    async def _flaky(ctx):
        raise RuntimeError("database hiccup")

    handle = await queue_client.enqueue(registry.CLEANUP_QUEUE, registry.JOB_CLEANUP_TRENDING_TOPICS, {})
    worker = Worker(
        queue_client,
        registry.CLEANUP_QUEUE,
        _cleanup_handlers(**{registry.JOB_CLEANUP_TRENDING_TOPICS: _flaky}),
        poll_interval_seconds=0.05,
    )
    worker.on("failed", lambda ctx, exc: failures.append(str(exc)))
    dead = []
    worker.on("dead", lambda ctx, exc: dead.append(exc))

    await _run_until(worker, asyncio.Event(), lambda: bool(failures))

    stored = await queue_client.get_job(handle.id)
    assert stored is not None
    assert stored.status == JobStatus.failed
    assert stored.next_retry_at is not None
    assert failures == ["database hiccup"]
    assert dead == []
    assert metrics.snapshot()["jobs_failed:cleanup"] == 1


@pytest.mark.anyio("asyncio")
async def test_permanent_failure_skips_retries(queue_client: QueueClient) -> None:
    dead = []

    async def _missing(ctx):
        raise PermanentJobError("Artifact gone")

    await queue_client.enqueue(registry.CLEANUP_QUEUE, registry.JOB_CLEANUP_TRENDING_TOPICS, {}, JobOptions(attempts=10))
    worker = Worker(
        queue_client,
        registry.CLEANUP_QUEUE,
        _cleanup_handlers(**{registry.JOB_CLEANUP_TRENDING_TOPICS: _missing}),
        poll_interval_seconds=0.05,
    )
    worker.on("dead", lambda ctx, exc: dead.append(ctx.attempt))

    await _run_until(worker, asyncio.Event(), lambda: bool(dead))

    assert dead == [1]


@pytest.mark.anyio("asyncio")
async def test_listener_errors_do_not_break_the_worker(queue_client: QueueClient) -> None:
    seen = []

    def _broken(ctx, result):
        raise RuntimeError("listener bug")

    await queue_client.enqueue(registry.CLEANUP_QUEUE, registry.JOB_CLEANUP_EXPIRED_MEDIA, {})
    await queue_client.enqueue(registry.CLEANUP_QUEUE, registry.JOB_CLEANUP_EXPIRED_MEDIA, {})
    worker = Worker(queue_client, registry.CLEANUP_QUEUE, _cleanup_handlers(), poll_interval_seconds=0.05)
    worker.on("completed", _broken)
    worker.on("completed", lambda ctx, result: seen.append(ctx.job_id))

    await _run_until(worker, asyncio.Event(), lambda: len(seen) == 2)

    assert len(set(seen)) == 2


@pytest.mark.anyio("asyncio")
async def test_concurrency_caps_in_flight_jobs(queue_client: QueueClient) -> None:
    running = 0
    peak = 0
    finished = []

    async def _slow(ctx):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.1)
        running -= 1
        finished.append(ctx.job_id)
        return None

    for _ in range(5):
        await queue_client.enqueue(registry.CLEANUP_QUEUE, registry.JOB_CLEANUP_EXPIRED_MEDIA, {})
    worker = Worker(
        queue_client,
        registry.CLEANUP_QUEUE,
        _cleanup_handlers(**{registry.JOB_CLEANUP_EXPIRED_MEDIA: _slow}),
        concurrency=2,
        poll_interval_seconds=0.05,
    )

    await _run_until(worker, asyncio.Event(), lambda: len(finished) == 5)

    assert peak == 2


@pytest.mark.anyio("asyncio")
async def test_limiter_holds_back_claims(queue_client: QueueClient) -> None:
    started = []

    async def _render(ctx):
        started.append(ctx.job_id)
        return None

    for _ in range(3):
        await queue_client.enqueue(registry.VIDEO_QUEUE, registry.JOB_GENERATE_ARTIFACT_VIDEO, {})
    worker = Worker(
        queue_client,
        registry.VIDEO_QUEUE,
        {registry.JOB_GENERATE_ARTIFACT_VIDEO: _render},
        concurrency=3,
        limiter=LimiterOptions(max=2, duration_ms=60000),
        poll_interval_seconds=0.05,
    )
    stop = asyncio.Event()
    task = asyncio.create_task(worker.run(stop))
    await asyncio.sleep(0.5)
    stop.set()
    await asyncio.wait_for(task, timeout=5)

    assert len(started) == 2
    health = await queue_client.get_queue_health(registry.VIDEO_QUEUE)
    assert health.counts["waiting"] == 1


@pytest.mark.anyio("asyncio")
async def test_drain_cancels_jobs_past_timeout(queue_client: QueueClient) -> None:
    started = asyncio.Event()

    async def _hang(ctx):
        started.set()
        await asyncio.sleep(3600)

    handle = await queue_client.enqueue(
        registry.CLEANUP_QUEUE, registry.JOB_CLEANUP_EXPIRED_MEDIA, {}, JobOptions(remove_on_fail=False)
    )
    worker = Worker(
        queue_client,
        registry.CLEANUP_QUEUE,
        _cleanup_handlers(**{registry.JOB_CLEANUP_EXPIRED_MEDIA: _hang}),
        poll_interval_seconds=0.05,
        drain_timeout_seconds=0.1,
    )
    stop = asyncio.Event()
    task = asyncio.create_task(worker.run(stop))
    await asyncio.wait_for(started.wait(), timeout=5)
    stop.set()
    await asyncio.wait_for(task, timeout=5)

    assert worker.in_flight == 0
    stored = await queue_client.get_job(handle.id)
    assert stored is not None
    assert stored.status == JobStatus.failed
    assert stored.error_message == "worker shut down before job finished"
