"""Curated topic pipelines on the ghost queue.

Dispatch fans out one sync job per topic, spaced so the Twitter list
endpoint (15 requests per 15 minutes) is never hit in a burst. Each sync
chains a digest, which turns the topic's recent posts into trending topics.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select

from storyforge.core.config import settings
from storyforge.core.errors import RecordNotFoundError
from storyforge.jobs.cleanup import sweep_expired_trending_topics
from storyforge.jobs.context import JobContext, require_uuid
from storyforge.models.jobs import BackoffType
from storyforge.models.topics import CuratedTopic, NetworkPost, TopicType, TrendingTopic
from storyforge.queues import registry
from storyforge.queues.client import Backoff, JobOptions
from storyforge.services.twitter import engagement_score

logger = logging.getLogger(__name__)

ROTATION_GROUPS = 7


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def current_rotation_group(now: datetime | None = None) -> int:
    """Evergreen rotation group for ``now``: the ISO weekday, 1 (Monday) to 7."""
    return _as_utc(now or _now()).isoweekday()


async def topics_ready_for_sync(session) -> list[CuratedTopic]:
    rows = await session.execute(
        select(CuratedTopic)
        .where(
            CuratedTopic.is_active.is_(True),
            CuratedTopic.twitter_list_id.is_not(None),
            CuratedTopic.twitter_list_id != "",
            CuratedTopic.topic_type.in_((TopicType.realtime, TopicType.hybrid)),
        )
        .order_by(CuratedTopic.last_synced_at.asc().nulls_first(), CuratedTopic.name.asc())
    )
    return list(rows.scalars().all())


def _sync_options(topic_id: str, *, index: int, now_ms: int) -> JobOptions:
    stagger = max(0, int(getattr(settings, "topic_sync_stagger_ms", 90000) or 0))
    return JobOptions(
        delay_ms=index * stagger,
        job_id=f"sync-topic-{topic_id}-{now_ms}",
        attempts=max(1, int(getattr(settings, "topic_sync_attempts", 3) or 3)),
        backoff=Backoff(
            type=BackoffType.exponential,
            delay_ms=max(1, int(getattr(settings, "topic_sync_backoff_ms", 60000) or 60000)),
        ),
        remove_on_complete=True,
        remove_on_fail=False,
    )


async def dispatch_curated_topics(ctx: JobContext) -> dict[str, Any]:
    async with ctx.session_factory() as session:
        topics = [(str(topic.id), topic.slug) for topic in await topics_ready_for_sync(session)]
    if not topics:
        logger.info("curated_topic_dispatch_empty")
        return {"dispatched": 0, "delays": []}

    now_ms = int(_now().timestamp() * 1000)
    delays: list[int] = []
    for index, (topic_id, slug) in enumerate(topics):
        handle = await ctx.queue.enqueue(
            registry.GHOST_QUEUE,
            registry.JOB_SYNC_CURATED_TOPIC,
            {"curatedTopicId": topic_id},
            _sync_options(topic_id, index=index, now_ms=now_ms),
        )
        delays.append(handle.delay_ms)
        logger.info("curated_topic_sync_queued", extra={"topic_slug": slug, "delay_ms": handle.delay_ms})

    logger.info("curated_topic_dispatch_completed", extra={"dispatched": len(topics), "span_ms": delays[-1]})
    return {"dispatched": len(topics), "delays": delays}


async def sync_curated_topic(ctx: JobContext) -> dict[str, Any]:
    topic_id = require_uuid(ctx.payload, "curatedTopicId")
    twitter = ctx.services.twitter
    if twitter is None:
        raise RuntimeError("sync-curated-topic needs the Twitter client")

    async with ctx.session_factory() as session:
        topic = await session.get(CuratedTopic, topic_id)
        if topic is None:
            raise RecordNotFoundError("CuratedTopic", topic_id)
        if not (topic.twitter_list_id or "").strip():
            logger.info("curated_topic_sync_skipped", extra={"topic_slug": topic.slug, "reason": "no_list"})
            return {"curatedTopicId": str(topic_id), "skipped": True}

        max_results = int(getattr(settings, "topic_sync_max_results", 100) or 100)
        tweets = await twitter.fetch_list_tweets(topic.twitter_list_id, max_results=max_results)
        now = _now()

        existing: dict[str, NetworkPost] = {}
        if tweets:
            rows = await session.execute(
                select(NetworkPost).where(
                    NetworkPost.curated_topic_id == topic.id,
                    NetworkPost.post_id.in_([tweet.id for tweet in tweets]),
                )
            )
            existing = {post.post_id: post for post in rows.scalars().all()}

        inserted = 0
        updated = 0
        for tweet in tweets:
            score = engagement_score(
                like_count=tweet.like_count, retweet_count=tweet.retweet_count, reply_count=tweet.reply_count
            )
            post = existing.get(tweet.id)
            if post is None:
                post = NetworkPost(curated_topic_id=topic.id, post_id=tweet.id)
                session.add(post)
                existing[tweet.id] = post
                inserted += 1
            else:
                updated += 1
            post.author_username = tweet.author_username
            post.content = tweet.text
            post.posted_at = tweet.created_at or now
            post.like_count = tweet.like_count
            post.retweet_count = tweet.retweet_count
            post.reply_count = tweet.reply_count
            post.engagement_score = score
            post.synced_at = now

        topic.last_synced_at = now
        await session.commit()
        slug = topic.slug

    logger.info(
        "curated_topic_synced",
        extra={"topic_slug": slug, "fetched": len(tweets), "inserted": inserted, "updated": updated},
    )

    digest_job_id = None
    try:
        handle = await ctx.queue.enqueue(
            registry.GHOST_QUEUE,
            registry.JOB_DIGEST_RECENT_TOPICS,
            {"curatedTopicId": str(topic_id)},
            JobOptions(job_id=f"digest-topic-{topic_id}-{int(now.timestamp() * 1000)}"),
        )
        digest_job_id = str(handle.id)
    except Exception:
        logger.exception("curated_topic_digest_enqueue_failed", extra={"topic_slug": slug})

    return {
        "curatedTopicId": str(topic_id),
        "fetched": len(tweets),
        "inserted": inserted,
        "updated": updated,
        "digestJobId": digest_job_id,
    }


def _valid_indices(indices: list[int], size: int) -> list[int]:
    seen: set[int] = set()
    kept: list[int] = []
    for index in indices:
        if 0 <= index < size and index not in seen:
            seen.add(index)
            kept.append(index)
    return kept


async def digest_recent_topics(ctx: JobContext) -> dict[str, Any]:
    topic_id = require_uuid(ctx.payload, "curatedTopicId")
    ai = ctx.services.ai
    if ai is None:
        raise RuntimeError("digest-recent-topics needs the AI service")
    min_posts = max(1, int(getattr(settings, "digest_min_posts", 10) or 10))
    max_posts = max(1, int(getattr(settings, "digest_max_posts", 100) or 100))
    lookback = timedelta(days=max(1, int(getattr(settings, "digest_lookback_days", 7) or 7)))
    ttl = timedelta(hours=max(1, int(getattr(settings, "trending_topic_ttl_hours", 48) or 48)))

    async with ctx.session_factory() as session:
        topic = await session.get(CuratedTopic, topic_id)
        if topic is None:
            raise RecordNotFoundError("CuratedTopic", topic_id)
        now = _now()
        since = _as_utc(topic.last_digested_at) if topic.last_digested_at else now - lookback
        posts = list(
            (
                await session.execute(
                    select(NetworkPost)
                    .where(NetworkPost.curated_topic_id == topic.id, NetworkPost.posted_at > since)
                    .order_by(NetworkPost.engagement_score.desc(), NetworkPost.posted_at.desc())
                    .limit(max_posts)
                )
            )
            .scalars()
            .all()
        )
        if len(posts) < min_posts:
            logger.info(
                "curated_topic_digest_skipped",
                extra={"topic_slug": topic.slug, "posts_found": len(posts), "min_posts": min_posts},
            )
            return {"curatedTopicId": str(topic_id), "skipped": True, "postsFound": len(posts)}

        extraction = await ai.extract_trending_topics(topic.name, [post.content for post in posts])
        evergreen = topic.topic_type == TopicType.evergreen
        stored = 0
        for position, extracted in enumerate(extraction.topics):
            indices = _valid_indices(extracted.post_indices, len(posts))
            samples = [posts[index] for index in indices]
            session.add(
                TrendingTopic(
                    curated_topic_id=topic.id,
                    topic_name=extracted.topic[:255],
                    context=extracted.context,
                    mention_count=len(samples),
                    total_engagement=float(sum(float(post.engagement_score or 0.0) for post in samples)),
                    sample_post_ids=[str(post.id) for post in samples],
                    rotation_group=(position % ROTATION_GROUPS) + 1 if evergreen else None,
                    detected_at=now,
                    expires_at=None if evergreen else now + ttl,
                )
            )
            stored += 1
        topic.digest_tokens = int(topic.digest_tokens or 0) + extraction.usage.total_tokens
        topic.digest_cost_usd = round(float(topic.digest_cost_usd or 0.0) + float(extraction.cost_usd), 6)
        meta = dict(topic.meta or {})
        meta["last_digest"] = {
            "at": now.isoformat(),
            "posts": len(posts),
            "tokens": extraction.usage.total_tokens,
            "cost_usd": extraction.cost_usd,
            "model": extraction.model,
        }
        topic.meta = meta
        # advanced even when nothing was extracted so the same window is not re-sent
        topic.last_digested_at = now
        await session.commit()
        slug = topic.slug

        swept = await sweep_expired_trending_topics(session, now=now)

    logger.info(
        "curated_topic_digested",
        extra={
            "topic_slug": slug,
            "posts_analyzed": len(posts),
            "topics_stored": stored,
            "swept": swept,
            "cost_usd": extraction.cost_usd,
        },
    )
    return {
        "curatedTopicId": str(topic_id),
        "skipped": False,
        "postsAnalyzed": len(posts),
        "topicsStored": stored,
        "costUsd": extraction.cost_usd,
    }
