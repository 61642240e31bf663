from __future__ import annotations

import logging
from datetime import datetime, timezone

from storyforge.queues import registry
from storyforge.queues.client import JobHandle, JobOptions, QueueClient, ScheduledJobInfo

logger = logging.getLogger(__name__)

TOPIC_DISPATCH_CRON = "*/30 * * * *"
TOPIC_DISPATCH_JOB_ID = "dispatch-curated-topics-automated"


async def start_topic_scheduler(client: QueueClient) -> ScheduledJobInfo:
    for info in await client.get_repeatables(registry.GHOST_QUEUE, job_name=registry.JOB_DISPATCH_CURATED_TOPICS):
        await client.remove_repeatable(info.key)
    info = await client.schedule_repeating(
        registry.GHOST_QUEUE,
        registry.JOB_DISPATCH_CURATED_TOPICS,
        {"automated": True},
        TOPIC_DISPATCH_CRON,
        TOPIC_DISPATCH_JOB_ID,
        JobOptions(remove_on_complete=True, remove_on_fail=False),
    )
    logger.info("topic_scheduler_started", extra={"cron_pattern": TOPIC_DISPATCH_CRON})
    return info


async def trigger_manual_topic_dispatch(client: QueueClient) -> JobHandle:
    handle = await client.enqueue(
        registry.GHOST_QUEUE,
        registry.JOB_DISPATCH_CURATED_TOPICS,
        {"manual": True, "triggeredAt": datetime.now(timezone.utc).isoformat()},
    )
    logger.info("topic_dispatch_manual_triggered", extra={"job_id": str(handle.id)})
    return handle


async def get_scheduled_topic_jobs(client: QueueClient) -> list[ScheduledJobInfo]:
    return await client.get_repeatables(registry.GHOST_QUEUE, job_name=registry.JOB_DISPATCH_CURATED_TOPICS)
