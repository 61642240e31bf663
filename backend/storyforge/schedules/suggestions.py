from __future__ import annotations

import logging

from storyforge.jobs.suggestions import eligible_connected_accounts, queue_suggestions_for
from storyforge.queues import registry
from storyforge.queues.client import JobHandle, JobOptions, QueueClient, ScheduledJobInfo

logger = logging.getLogger(__name__)

SUGGESTIONS_CRON = "0 * * * *"
SUGGESTIONS_JOB_ID = "hourly-suggestion-generation-automated"


async def start_suggestion_scheduler(client: QueueClient) -> ScheduledJobInfo:
    for info in await client.get_repeatables(registry.GHOST_QUEUE, job_name=registry.JOB_GENERATE_SUGGESTIONS_AUTOMATED):
        await client.remove_repeatable(info.key)
    info = await client.schedule_repeating(
        registry.GHOST_QUEUE,
        registry.JOB_GENERATE_SUGGESTIONS_AUTOMATED,
        {},
        SUGGESTIONS_CRON,
        SUGGESTIONS_JOB_ID,
        JobOptions(remove_on_complete=True, remove_on_fail=False),
    )
    logger.info("suggestion_scheduler_started", extra={"cron_pattern": SUGGESTIONS_CRON})
    return info


async def trigger_manual_suggestions_for_all(client: QueueClient) -> list[JobHandle]:
    """One suggestion job per eligible connected account, regardless of its scheduled hour."""
    async with client.session_factory() as session:
        connection_ids = [connection.id for connection in await eligible_connected_accounts(session)]
    handles = await queue_suggestions_for(client, connection_ids, automated=False)
    logger.info("suggestions_manual_triggered", extra={"jobs_queued": len(handles)})
    return handles


async def get_scheduled_suggestion_jobs(client: QueueClient) -> list[ScheduledJobInfo]:
    return await client.get_repeatables(registry.GHOST_QUEUE, job_name=registry.JOB_GENERATE_SUGGESTIONS_AUTOMATED)
