"""Per-queue worker: claims jobs, routes them by name and settles the outcome."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Callable, Mapping
from contextlib import suppress
from typing import Any

from storyforge.core import metrics
from storyforge.core.config import settings
from storyforge.core.errors import HandlerRegistrationError, UnknownJobError
from storyforge.core.logging_config import job_log_context
from storyforge.core.redis_client import await_if_needed
from storyforge.core.sentry import capture_job_failure
from storyforge.jobs.context import JobContext, JobHandler, Services
from storyforge.models.jobs import BackgroundJob, JobStatus
from storyforge.queues.client import QueueClient
from storyforge.queues.registry import declared_jobs
from storyforge.workers.limiter import LimiterOptions, RollingWindowLimiter

logger = logging.getLogger(__name__)

WORKER_EVENTS = frozenset({"completed", "failed", "dead"})


def validate_handlers(queue_name: str, handlers: Mapping[str, JobHandler]) -> None:
    """Fail fast when ``handlers`` does not cover exactly the jobs declared for ``queue_name``."""
    if not handlers:
        raise HandlerRegistrationError(f"No handlers given for queue {queue_name!r}")
    try:
        declared = declared_jobs(queue_name)
    except ValueError as exc:
        raise HandlerRegistrationError(str(exc)) from exc
    for name, handler in handlers.items():
        if not callable(handler):
            raise HandlerRegistrationError(f"Handler for {name!r} on {queue_name!r} is not callable")
    missing = sorted(declared - set(handlers))
    if missing:
        raise HandlerRegistrationError(f"Queue {queue_name!r} has no handler for {', '.join(missing)}")
    undeclared = sorted(set(handlers) - declared)
    if undeclared:
        raise HandlerRegistrationError(f"Queue {queue_name!r} does not accept {', '.join(undeclared)}")


class Worker:
    def __init__(
        self,
        client: QueueClient,
        queue_name: str,
        handlers: Mapping[str, JobHandler],
        *,
        services: Services | None = None,
        concurrency: int = 1,
        limiter: LimiterOptions | None = None,
        worker_id: str = "worker",
        poll_interval_seconds: float | None = None,
        drain_timeout_seconds: float | None = None,
    ) -> None:
        validate_handlers(queue_name, handlers)
        self.client = client
        self.queue_name = queue_name
        self.handlers = dict(handlers)
        self.services = services or Services()
        self.concurrency = max(1, int(concurrency))
        self.worker_id = worker_id
        self.poll_interval_seconds = max(
            0.05, float(poll_interval_seconds or getattr(settings, "queue_poll_interval_seconds", 2.0) or 2.0)
        )
        self.drain_timeout_seconds = drain_timeout_seconds
        self.limiter = (
            RollingWindowLimiter(limiter, key=queue_name, redis=client.redis) if limiter is not None else None
        )
        self._tasks: set[asyncio.Task] = set()
        self._listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register ``callback(ctx, result_or_exc)`` for ``completed``, ``failed`` or ``dead``."""
        if event not in WORKER_EVENTS:
            raise ValueError(f"Unknown worker event {event!r}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, ctx: JobContext, value: Any) -> None:
        for callback in self._listeners.get(event, []):
            try:
                await await_if_needed(callback(ctx, value))
            except Exception:
                logger.exception("queue_worker_listener_failed", extra={"event": event, "queue_name": self.queue_name})

    async def _sleep(self, stop: asyncio.Event, seconds: float) -> None:
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=max(0.01, seconds))

    async def _idle(self, stop: asyncio.Event) -> None:
        if self.client.redis is None:
            await self._sleep(stop, self.poll_interval_seconds)
            return
        try:
            await self.client.wait_for_wakeup(self.queue_name, timeout=self.poll_interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("queue_worker_wakeup_failed", extra={"queue_name": self.queue_name, "error": str(exc)})
            await self._sleep(stop, self.poll_interval_seconds)

    async def run(self, stop: asyncio.Event) -> None:
        """Claim and process jobs until ``stop`` is set, then drain in-flight work."""
        logger.info(
            "queue_worker_started",
            extra={"queue_name": self.queue_name, "worker_id": self.worker_id, "concurrency": self.concurrency},
        )
        try:
            while not stop.is_set():
                if len(self._tasks) >= self.concurrency:
                    await asyncio.wait(
                        set(self._tasks), timeout=self.poll_interval_seconds, return_when=asyncio.FIRST_COMPLETED
                    )
                    continue
                if self.limiter is not None:
                    delay = await self.limiter.wait_time()
                    if delay > 0:
                        await self._sleep(stop, delay)
                        continue
                try:
                    job = await self.client.claim_next(self.queue_name, worker_id=self.worker_id)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("queue_worker_claim_failed", extra={"queue_name": self.queue_name})
                    await self._sleep(stop, self.poll_interval_seconds)
                    continue
                if job is None:
                    await self._idle(stop)
                    continue
                if self.limiter is not None:
                    await self.limiter.record_start()
                task = asyncio.create_task(self._process(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            await self.drain(self.drain_timeout_seconds)
            logger.info("queue_worker_stopped", extra={"queue_name": self.queue_name, "worker_id": self.worker_id})

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight jobs; anything still running after ``timeout`` is cancelled. Returns that count."""
        pending = set(self._tasks)
        if not pending:
            return 0
        _, unfinished = await asyncio.wait(pending, timeout=timeout)
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)
            logger.warning(
                "queue_worker_drain_timeout",
                extra={"queue_name": self.queue_name, "cancelled": len(unfinished)},
            )
        return len(unfinished)

    def _context(self, job: BackgroundJob) -> JobContext:
        return JobContext(
            job_id=job.id,
            queue_name=self.queue_name,
            job_name=job.job_name,
            payload=dict(job.payload or {}),
            queue=self.client,
            session_factory=self.client.session_factory,
            services=self.services,
            attempt=int(job.attempt or 1),
            max_attempts=int(job.max_attempts or 1),
        )

    async def _process(self, job: BackgroundJob) -> None:
        ctx = self._context(job)
        with job_log_context(job_id=str(ctx.job_id), queue_name=self.queue_name):
            started = time.monotonic()
            handler = self.handlers.get(ctx.job_name)
            try:
                if handler is None:
                    raise UnknownJobError(self.queue_name, ctx.job_name)
                result = await handler(ctx)
            except asyncio.CancelledError:
                with suppress(Exception):
                    await self.client.fail(ctx.job_id, RuntimeError("worker shut down before job finished"))
                raise
            except Exception as exc:
                await self._settle_failure(ctx, exc)
                return

            try:
                await self.client.complete(ctx.job_id, result if isinstance(result, dict) else None)
            except Exception:
                logger.exception("queue_job_settle_failed", extra={"job_name": ctx.job_name})
                return
            metrics.record_job_completed(self.queue_name)
            logger.info(
                "queue_job_completed",
                extra={
                    "job_name": ctx.job_name,
                    "attempt": ctx.attempt,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )
            await self._emit("completed", ctx, result)

    async def _settle_failure(self, ctx: JobContext, exc: Exception) -> None:
        try:
            status = await self.client.fail(ctx.job_id, exc)
        except Exception:
            logger.exception("queue_job_settle_failed", extra={"job_name": ctx.job_name})
            return
        dead = status == JobStatus.dead
        extra = {
            "job_name": ctx.job_name,
            "attempt": ctx.attempt,
            "max_attempts": ctx.max_attempts,
            "error_type": type(exc).__name__,
            "error": str(exc),
        }
        if dead:
            metrics.record_job_dead(self.queue_name)
            logger.error("queue_job_dead_lettered", extra=extra)
            capture_job_failure(exc, queue_name=self.queue_name, job_name=ctx.job_name, job_id=str(ctx.job_id))
        else:
            metrics.record_job_failed(self.queue_name)
            logger.warning("queue_job_failed", extra=extra)
        await self._emit("failed", ctx, exc)
        if dead:
            await self._emit("dead", ctx, exc)
