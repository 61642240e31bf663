"""Worker process entrypoint: ``python -m storyforge.workers.runner [media|video|content|cleanup|ghost|all]``.

One process runs a ``Worker`` per selected queue, plus the maintenance loop
(heartbeat, retry sweep, stalled-job recovery) and the repeatable-job pump.
Every process may pump; the guarded schedule update lets one of them enqueue
each run.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import socket
import sys
import time
from collections.abc import Sequence
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

from storyforge.core.config import settings
from storyforge.core.errors import ScheduleSetupError
from storyforge.core.logging_config import configure_logging
from storyforge.core.redis_client import await_if_needed, close_redis, get_redis
from storyforge.core.sentry import init_sentry
from storyforge.core.startup_checks import validate_production_settings
from storyforge.db.session import SessionLocal
from storyforge.jobs.context import Services
from storyforge.jobs.handlers import handlers_for
from storyforge.queues import registry
from storyforge.queues.client import QueueClient
from storyforge.schedules.cleanup import start_cleanup_scheduler
from storyforge.schedules.suggestions import start_suggestion_scheduler
from storyforge.schedules.topics import start_topic_scheduler
from storyforge.services.ai import OpenAIService
from storyforge.services.storage import StorageService
from storyforge.services.twitter import TwitterClient
from storyforge.services.video_render import HttpVideoRenderer
from storyforge.workers.dispatch import Worker
from storyforge.workers.limiter import LimiterOptions

logger = logging.getLogger(__name__)

HEARTBEAT_PREFIX = str(
    getattr(settings, "queue_worker_heartbeat_prefix", "queues:workers:heartbeat") or "queues:workers:heartbeat"
)
HEARTBEAT_TTL_SECONDS = max(10, int(getattr(settings, "queue_worker_heartbeat_ttl_seconds", 30) or 30))
HEARTBEAT_FILE = str(
    getattr(settings, "queue_worker_heartbeat_file", "/tmp/storyforge-worker-heartbeat.json")
    or "/tmp/storyforge-worker-heartbeat.json"
)
RETRY_SWEEP_SECONDS = max(1, int(getattr(settings, "queue_retry_sweep_seconds", 10) or 10))
REPEATABLE_PUMP_SECONDS = max(1, int(getattr(settings, "queue_repeatable_pump_seconds", 15) or 15))
STALLED_JOB_TIMEOUT_SECONDS = max(60, int(getattr(settings, "queue_stalled_job_timeout_seconds", 1800) or 1800))
STALLED_CHECK_SECONDS = 60.0
MAINTENANCE_TICK_SECONDS = 1.0

QUEUE_ALIASES = {
    "media": registry.MEDIA_QUEUE,
    "video": registry.VIDEO_QUEUE,
    "content": registry.CONTENT_QUEUE,
    "cleanup": registry.CLEANUP_QUEUE,
    "ghost": registry.GHOST_QUEUE,
}


@dataclass(frozen=True)
class QueueProfile:
    queue_name: str
    concurrency: int
    limiter: LimiterOptions | None = None


def queue_profiles() -> dict[str, QueueProfile]:
    def _concurrency(name: str, default: int) -> int:
        return max(1, int(getattr(settings, name, default) or default))

    video_limiter = LimiterOptions(
        max=max(1, int(getattr(settings, "video_queue_limiter_max", 3) or 3)),
        duration_ms=max(1, int(getattr(settings, "video_queue_limiter_duration_ms", 60000) or 60000)),
    )
    return {
        registry.MEDIA_QUEUE: QueueProfile(registry.MEDIA_QUEUE, _concurrency("media_queue_concurrency", 10)),
        registry.VIDEO_QUEUE: QueueProfile(
            registry.VIDEO_QUEUE, _concurrency("video_queue_concurrency", 2), limiter=video_limiter
        ),
        registry.CONTENT_QUEUE: QueueProfile(registry.CONTENT_QUEUE, _concurrency("content_queue_concurrency", 3)),
        registry.CLEANUP_QUEUE: QueueProfile(registry.CLEANUP_QUEUE, _concurrency("cleanup_queue_concurrency", 2)),
        registry.GHOST_QUEUE: QueueProfile(registry.GHOST_QUEUE, _concurrency("ghost_queue_concurrency", 3)),
    }


def resolve_queue_names(selected: Sequence[str]) -> list[str]:
    names: list[str] = []
    for raw in selected or ["all"]:
        value = (raw or "").strip().lower()
        if value == "all":
            candidates = list(registry.ALL_QUEUES)
        elif value in QUEUE_ALIASES:
            candidates = [QUEUE_ALIASES[value]]
        elif value in registry.QUEUE_JOBS:
            candidates = [value]
        else:
            raise ValueError(f"Unknown queue {raw!r}")
        names.extend(name for name in candidates if name not in names)
    return names


def build_services() -> Services:
    storage = StorageService()
    ai = None
    if (settings.openai_api_key or "").strip():
        ai = OpenAIService(storage)
    else:
        logger.warning("openai_not_configured")
    return Services(ai=ai, storage=storage, twitter=TwitterClient(), video_renderer=HttpVideoRenderer())


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def _heartbeat_payload(worker_id: str, queue_names: Sequence[str]) -> dict[str, object]:
    return {
        "worker_id": worker_id,
        "hostname": socket.gethostname(),
        "pid": os.getpid(),
        "queues": list(queue_names),
        "app_version": (getattr(settings, "app_version", "") or "").strip() or None,
        "last_seen_at": datetime.now(timezone.utc).isoformat(),
    }


def _write_heartbeat_file(payload: dict[str, object]) -> None:
    try:
        target = Path(HEARTBEAT_FILE)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_suffix(f"{target.suffix}.tmp")
        temp.write_text(json.dumps(payload, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")
        temp.replace(target)
    except OSError:
        logger.exception("queue_worker_heartbeat_file_failed")


async def publish_heartbeat(redis, *, worker_id: str, queue_names: Sequence[str]) -> None:
    payload = _heartbeat_payload(worker_id, queue_names)
    _write_heartbeat_file(payload)
    if redis is None:
        return
    await await_if_needed(
        redis.set(
            f"{HEARTBEAT_PREFIX}:{worker_id}",
            json.dumps(payload, separators=(",", ":"), ensure_ascii=False),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    )


async def _sleep(stop: asyncio.Event, seconds: float) -> None:
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


async def run_maintenance_loop(
    client: QueueClient, stop: asyncio.Event, *, worker_id: str, queue_names: Sequence[str]
) -> None:
    heartbeat_interval = max(5.0, float(HEARTBEAT_TTL_SECONDS) / 2.0)
    last_heartbeat = last_retry_sweep = last_stalled_check = float("-inf")
    while not stop.is_set():
        try:
            now = time.monotonic()
            if now - last_heartbeat >= heartbeat_interval:
                await publish_heartbeat(client.redis, worker_id=worker_id, queue_names=queue_names)
                last_heartbeat = now
            if now - last_retry_sweep >= float(RETRY_SWEEP_SECONDS):
                queued = await client.enqueue_due_retries(limit=100)
                if queued:
                    logger.info("queue_retry_enqueued", extra={"count": len(queued)})
                last_retry_sweep = now
            if now - last_stalled_check >= STALLED_CHECK_SECONDS:
                cutoff = datetime.now(timezone.utc) - timedelta(seconds=STALLED_JOB_TIMEOUT_SECONDS)
                await client.recover_stalled_jobs(stalled_before=cutoff, limit=100)
                last_stalled_check = now
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("queue_maintenance_loop_error", extra={"worker_id": worker_id})
        await _sleep(stop, MAINTENANCE_TICK_SECONDS)


async def run_repeatable_pump(client: QueueClient, stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            promoted = await client.promote_due_repeatables()
            if promoted:
                logger.info("queue_repeatables_promoted", extra={"count": promoted})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("queue_repeatable_pump_failed", extra={"error": str(exc)})
        await _sleep(stop, float(REPEATABLE_PUMP_SECONDS))


async def register_schedules(client: QueueClient, queue_names: Sequence[str]) -> None:
    """Reset and re-register the schedules owned by the selected queues."""
    try:
        if registry.CLEANUP_QUEUE in queue_names:
            await start_cleanup_scheduler(client)
        if registry.GHOST_QUEUE in queue_names:
            await start_topic_scheduler(client)
            await start_suggestion_scheduler(client)
    except ScheduleSetupError:
        raise
    except Exception as exc:
        raise ScheduleSetupError(f"Could not register schedules: {exc}") from exc


def install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)


async def run_workers(
    queue_names: Sequence[str],
    *,
    client: QueueClient | None = None,
    services: Services | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    stop = stop or asyncio.Event()
    client = client or QueueClient(SessionLocal, get_redis())
    worker_id = _worker_id()
    if client.redis is None:
        logger.warning(
            "queue_worker_degraded_mode_started",
            extra={"worker_id": worker_id, "poll_interval_seconds": settings.queue_poll_interval_seconds},
        )

    await register_schedules(client, queue_names)
    services = services or build_services()
    profiles = queue_profiles()
    drain_timeout = float(getattr(settings, "queue_drain_timeout_seconds", 60.0) or 60.0)
    workers = [
        Worker(
            client,
            name,
            handlers_for(name),
            services=services,
            concurrency=profiles[name].concurrency,
            limiter=profiles[name].limiter,
            worker_id=f"{worker_id}:{name}",
            drain_timeout_seconds=drain_timeout,
        )
        for name in queue_names
    ]

    tasks = [asyncio.create_task(worker.run(stop)) for worker in workers]
    tasks.append(
        asyncio.create_task(run_maintenance_loop(client, stop, worker_id=worker_id, queue_names=queue_names))
    )
    tasks.append(asyncio.create_task(run_repeatable_pump(client, stop)))
    logger.info("queue_workers_started", extra={"worker_id": worker_id, "queues": list(queue_names)})
    try:
        await stop.wait()
    finally:
        stop.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error("queue_worker_task_failed", extra={"error": repr(result)})
        await close_redis()
        logger.info("queue_workers_stopped", extra={"worker_id": worker_id})


async def _serve(queue_names: Sequence[str]) -> None:
    stop = asyncio.Event()
    install_signal_handlers(stop)
    await run_workers(queue_names, stop=stop)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run storyforge queue workers.")
    parser.add_argument(
        "queues",
        nargs="*",
        default=["all"],
        help="Queues to serve: media, video, content, cleanup, ghost or all (default).",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(json_logs=bool(settings.log_json))
    init_sentry()
    validate_production_settings()
    queue_names = resolve_queue_names(args.queues)
    try:
        asyncio.run(_serve(queue_names))
    except ScheduleSetupError:
        # a worker with no schedules would be a silent outage
        logger.exception("scheduler_setup_failed")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
