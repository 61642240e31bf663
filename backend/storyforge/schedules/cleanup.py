"""Recurring and manual cleanup jobs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from storyforge.core.config import settings
from storyforge.queues import registry
from storyforge.queues.client import JobHandle, JobOptions, QueueClient, ScheduledJobInfo

logger = logging.getLogger(__name__)

MEDIA_CLEANUP_CRON = "0 */4 * * *"
MEDIA_CLEANUP_JOB_ID = "expired-media-cleanup-scheduled"
TRENDING_CLEANUP_CRON = "30 */4 * * *"
TRENDING_CLEANUP_JOB_ID = "expired-trending-topics-cleanup-scheduled"

KEEP_COMPLETED = 10
KEEP_FAILED = 25

MANUAL_JOB_TYPES = {
    "media": registry.JOB_CLEANUP_EXPIRED_MEDIA,
    registry.JOB_CLEANUP_EXPIRED_MEDIA: registry.JOB_CLEANUP_EXPIRED_MEDIA,
    "trending-topics": registry.JOB_CLEANUP_TRENDING_TOPICS,
    registry.JOB_CLEANUP_TRENDING_TOPICS: registry.JOB_CLEANUP_TRENDING_TOPICS,
}


def _cleanup_options(*, job_id: str | None = None, priority: int = 0) -> JobOptions:
    return JobOptions(
        job_id=job_id,
        priority=priority,
        remove_on_complete=KEEP_COMPLETED,
        remove_on_fail=KEEP_FAILED,
    )


def media_cleanup_payload() -> dict[str, Any]:
    return {"batchSize": int(getattr(settings, "media_cleanup_batch_size", 100) or 100), "maxRetries": 3}


async def start_cleanup_scheduler(client: QueueClient) -> list[ScheduledJobInfo]:
    """Replace every cleanup schedule with the current set."""
    await client.clear_repeatables(registry.CLEANUP_QUEUE)
    scheduled = [
        await client.schedule_repeating(
            registry.CLEANUP_QUEUE,
            registry.JOB_CLEANUP_EXPIRED_MEDIA,
            media_cleanup_payload(),
            MEDIA_CLEANUP_CRON,
            MEDIA_CLEANUP_JOB_ID,
            _cleanup_options(),
        ),
        await client.schedule_repeating(
            registry.CLEANUP_QUEUE,
            registry.JOB_CLEANUP_TRENDING_TOPICS,
            {},
            TRENDING_CLEANUP_CRON,
            TRENDING_CLEANUP_JOB_ID,
            _cleanup_options(),
        ),
    ]
    logger.info("cleanup_scheduler_started", extra={"schedules": len(scheduled)})
    return scheduled


async def trigger_manual_cleanup(
    client: QueueClient, job_type: str = "media", options: dict[str, Any] | None = None
) -> JobHandle:
    job_name = MANUAL_JOB_TYPES.get((job_type or "").strip())
    if job_name is None:
        raise ValueError(f"Unknown cleanup job type {job_type!r}")
    payload: dict[str, Any] = media_cleanup_payload() if job_name == registry.JOB_CLEANUP_EXPIRED_MEDIA else {}
    payload.update(options or {})
    payload["manual"] = True
    payload["triggeredAt"] = datetime.now(timezone.utc).isoformat()
    handle = await client.enqueue(registry.CLEANUP_QUEUE, job_name, payload, _cleanup_options())
    logger.info("cleanup_manual_triggered", extra={"job_name": job_name, "job_id": str(handle.id)})
    return handle


async def get_scheduled_cleanup_jobs(client: QueueClient) -> list[ScheduledJobInfo]:
    return await client.get_repeatables(registry.CLEANUP_QUEUE)
