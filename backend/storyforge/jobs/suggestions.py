"""Post suggestions for connected accounts on the ghost queue."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from storyforge.core.config import settings
from storyforge.core.errors import RecordNotFoundError
from storyforge.jobs.context import JobContext, require_uuid
from storyforge.jobs.topics import current_rotation_group
from storyforge.models.content import Account
from storyforge.models.ghost import ConnectedAccount, PostSuggestion, UserTopicPreference
from storyforge.models.topics import TrendingTopic
from storyforge.queues import registry
from storyforge.queues.client import JobHandle, QueueClient

logger = logging.getLogger(__name__)

GHOST_PLATFORM = "ghost"
MAX_SUGGESTIONS_PER_RUN = 10
TRENDING_CANDIDATES = 20


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _eligibility_clause():
    return and_(
        ConnectedAccount.is_active.is_(True),
        or_(
            ConnectedAccount.sync_status == "ready",
            and_(
                ConnectedAccount.platform == GHOST_PLATFORM,
                ConnectedAccount.topics_of_interest.is_not(None),
                ConnectedAccount.topics_of_interest != "",
            ),
        ),
    )


async def eligible_connected_accounts(
    session: AsyncSession, *, account_ids: list[UUID] | None = None
) -> list[ConnectedAccount]:
    stmt = select(ConnectedAccount).where(_eligibility_clause())
    if account_ids is not None:
        if not account_ids:
            return []
        stmt = stmt.where(ConnectedAccount.account_id.in_(account_ids))
    rows = await session.execute(stmt.order_by(ConnectedAccount.account_id.asc(), ConnectedAccount.id.asc()))
    return list(rows.scalars().all())


def _suggestion_count(raw: Any) -> int:
    default = int(getattr(settings, "suggestion_default_count", 3) or 3)
    try:
        count = int(raw) if raw is not None else default
    except (TypeError, ValueError):
        count = default
    return max(1, min(count, MAX_SUGGESTIONS_PER_RUN))


async def queue_suggestions_for(
    client: QueueClient, connected_account_ids: list[UUID], *, automated: bool, count: int | None = None
) -> list[JobHandle]:
    triggered_at = _now().isoformat()
    handles: list[JobHandle] = []
    for connected_account_id in connected_account_ids:
        handles.append(
            await client.enqueue(
                registry.GHOST_QUEUE,
                registry.JOB_GENERATE_SUGGESTIONS,
                {
                    "connectedAccountId": str(connected_account_id),
                    "suggestionCount": _suggestion_count(count),
                    "automated": automated,
                    "triggeredAt": triggered_at,
                },
            )
        )
    return handles


async def generate_suggestions_automated(ctx: JobContext) -> dict[str, Any]:
    hour = _now().hour
    async with ctx.session_factory() as session:
        account_ids = list(
            (
                await session.execute(
                    select(Account.id).where(Account.generation_time_utc == hour, Account.timezone.is_not(None))
                )
            )
            .scalars()
            .all()
        )
        connections = await eligible_connected_accounts(session, account_ids=account_ids)
        connection_ids = [connection.id for connection in connections]

    await ctx.update_progress(20)
    handles = await queue_suggestions_for(ctx.queue, connection_ids, automated=True)
    await ctx.update_progress(100)
    logger.info(
        "suggestions_automated_cycle_completed",
        extra={"utc_hour": hour, "accounts": len(account_ids), "jobs_queued": len(handles)},
    )
    return {"utcHour": hour, "accountsScheduled": len(account_ids), "jobsQueued": len(handles)}


async def _topic_candidates(session: AsyncSession, connected_account_id: UUID, *, now: datetime) -> list[TrendingTopic]:
    curated_ids = list(
        (
            await session.execute(
                select(UserTopicPreference.curated_topic_id).where(
                    UserTopicPreference.connected_account_id == connected_account_id
                )
            )
        )
        .scalars()
        .all()
    )
    if not curated_ids:
        return []
    rotation_group = current_rotation_group(now)
    rows = await session.execute(
        select(TrendingTopic)
        .where(
            TrendingTopic.curated_topic_id.in_(curated_ids),
            or_(
                TrendingTopic.expires_at > now,
                and_(TrendingTopic.expires_at.is_(None), TrendingTopic.rotation_group == rotation_group),
            ),
        )
        .order_by(TrendingTopic.total_engagement.desc(), TrendingTopic.detected_at.desc())
        .limit(TRENDING_CANDIDATES)
    )
    return list(rows.scalars().all())


def _post_prompt(connection: ConnectedAccount, topic: TrendingTopic | None) -> str:
    parts = []
    if topic is not None:
        parts.append(f"Trending topic: {topic.topic_name}")
        if topic.context:
            parts.append(f"Context: {topic.context}")
    if connection.topics_of_interest:
        parts.append(f"Author interests: {connection.topics_of_interest}")
    if connection.voice:
        parts.append(f"Author voice: {connection.voice}")
    parts.append(f"Platform: {connection.platform}")
    return "\n".join(parts)


async def generate_suggestions(ctx: JobContext) -> dict[str, Any]:
    connected_account_id = require_uuid(ctx.payload, "connectedAccountId")
    count = _suggestion_count(ctx.payload.get("suggestionCount"))
    ai = ctx.services.ai
    if ai is None:
        raise RuntimeError("generate-suggestions needs the AI service")

    now = _now()
    async with ctx.session_factory() as session:
        connection = await session.get(ConnectedAccount, connected_account_id)
        if connection is None:
            raise RecordNotFoundError("ConnectedAccount", connected_account_id)
        if not connection.is_active:
            logger.info("suggestions_skipped_inactive", extra={"connected_account_id": str(connected_account_id)})
            return {"connectedAccountId": str(connected_account_id), "skipped": True, "created": 0}

        candidates = await _topic_candidates(session, connection.id, now=now)
        await ctx.update_progress(40)

        total_cost = 0.0
        created = 0
        for index in range(count):
            topic = candidates[index % len(candidates)] if candidates else None
            post = await ai.generate_post(_post_prompt(connection, topic), {"platform": connection.platform})
            session.add(
                PostSuggestion(
                    account_id=connection.account_id,
                    connected_account_id=connection.id,
                    trending_topic_id=topic.id if topic is not None else None,
                    content=post.content,
                    tokens=post.usage.total_tokens,
                    cost_usd=post.cost_usd,
                    ai_model=post.model,
                    meta={
                        "automated": bool(ctx.payload.get("automated")),
                        "topic_name": topic.topic_name if topic is not None else None,
                        "rotation_group": current_rotation_group(now),
                    },
                )
            )
            total_cost += post.cost_usd
            created += 1
        await session.commit()

    await ctx.update_progress(100)
    logger.info(
        "suggestions_generated",
        extra={
            "connected_account_id": str(connected_account_id),
            "created": created,
            "cost_usd": round(total_cost, 6),
        },
    )
    return {"connectedAccountId": str(connected_account_id), "created": created, "costUsd": round(total_cost, 6)}
