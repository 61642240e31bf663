from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest
from sqlalchemy import select

from storyforge.jobs import cleanup, topics
from storyforge.models.jobs import BackgroundJob
from storyforge.models.topics import CuratedTopic, NetworkPost, TopicType, TrendingTopic
from storyforge.queues import registry
from storyforge.services.ai import ExtractedTopic, TokenUsage, TopicExtraction
from storyforge.services.twitter import ListTweet


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def _add_topic(session_factory, slug: str, **fields) -> UUID:
    fields.setdefault("twitter_list_id", f"list-{slug}")
    async with session_factory() as session:
        topic = CuratedTopic(slug=slug, name=slug.replace("-", " ").title(), **fields)
        session.add(topic)
        await session.commit()
        return topic.id


async def _add_posts(session_factory, topic_id: UUID, count: int) -> None:
    posted = datetime.now(timezone.utc) - timedelta(hours=1)
    async with session_factory() as session:
        for index in range(count):
            session.add(
                NetworkPost(
                    curated_topic_id=topic_id,
                    post_id=f"tw-{index}",
                    content=f"post number {index}",
                    posted_at=posted,
                    engagement_score=float(index),
                )
            )
        await session.commit()


async def _ghost_jobs(session_factory, job_name: str) -> list[BackgroundJob]:
    async with session_factory() as session:
        rows = await session.execute(
            select(BackgroundJob).where(BackgroundJob.job_name == job_name).order_by(BackgroundJob.available_at.asc())
        )
        return list(rows.scalars().all())


def test_rotation_group_follows_the_iso_weekday() -> None:
    assert topics.current_rotation_group(datetime(2026, 10, 12, 8, tzinfo=timezone.utc)) == 1
    assert topics.current_rotation_group(datetime(2026, 10, 18, 23, tzinfo=timezone.utc)) == 7


@pytest.mark.anyio("asyncio")
async def test_dispatch_staggers_one_sync_per_eligible_topic(session_factory, make_context) -> None:
    for index in range(5):
        await _add_topic(session_factory, f"realtime-{index}", topic_type=TopicType.hybrid if index == 2 else TopicType.realtime)
    await _add_topic(session_factory, "evergreen", topic_type=TopicType.evergreen)
    await _add_topic(session_factory, "paused", is_active=False)
    await _add_topic(session_factory, "unlisted", twitter_list_id=None)

    result = await topics.dispatch_curated_topics(
        make_context(registry.GHOST_QUEUE, registry.JOB_DISPATCH_CURATED_TOPICS, {})
    )

    assert result == {"dispatched": 5, "delays": [0, 90000, 180000, 270000, 360000]}
    jobs = await _ghost_jobs(session_factory, registry.JOB_SYNC_CURATED_TOPIC)
    assert len(jobs) == 5
    assert {job.max_attempts for job in jobs} == {3}
    assert {job.backoff_delay_ms for job in jobs} == {60000}
    assert all(job.dedupe_key.startswith("sync-topic-") for job in jobs)


@pytest.mark.anyio("asyncio")
async def test_dispatch_with_no_topics_queues_nothing(session_factory, make_context) -> None:
    result = await topics.dispatch_curated_topics(
        make_context(registry.GHOST_QUEUE, registry.JOB_DISPATCH_CURATED_TOPICS, {})
    )
    assert result == {"dispatched": 0, "delays": []}


@pytest.mark.anyio("asyncio")
async def test_sync_upserts_posts_and_chains_a_digest(session_factory, make_context, fake_services) -> None:
    topic_id = await _add_topic(session_factory, "ai-news")
    async with session_factory() as session:
        session.add(NetworkPost(curated_topic_id=topic_id, post_id="1", content="old text", like_count=1))
        await session.commit()
    posted = datetime(2026, 10, 15, 12, tzinfo=timezone.utc)
    fake_services.twitter.tweets.extend(
        [
            ListTweet(id="1", text="edited text", author_username="ana", created_at=posted, like_count=10, retweet_count=2, reply_count=2),
            ListTweet(id="2", text="fresh", author_username="bo", created_at=None),
        ]
    )

    result = await topics.sync_curated_topic(
        make_context(registry.GHOST_QUEUE, registry.JOB_SYNC_CURATED_TOPIC, {"curatedTopicId": str(topic_id)})
    )

    assert result["inserted"] == 1
    assert result["updated"] == 1
    assert fake_services.twitter.requests == [("list-ai-news", 100)]
    async with session_factory() as session:
        posts = {
            post.post_id: post
            for post in (await session.execute(select(NetworkPost).where(NetworkPost.curated_topic_id == topic_id))).scalars()
        }
        topic = await session.get(CuratedTopic, topic_id)
    assert posts["1"].content == "edited text"
    assert posts["1"].engagement_score == pytest.approx(10 + 2 * 2 + 2 * 1.5)
    assert posts["2"].posted_at is not None
    assert topic.last_synced_at is not None
    [digest] = await _ghost_jobs(session_factory, registry.JOB_DIGEST_RECENT_TOPICS)
    assert str(digest.id) == result["digestJobId"]
    assert digest.payload == {"curatedTopicId": str(topic_id)}


@pytest.mark.anyio("asyncio")
async def test_sync_without_list_is_skipped(session_factory, make_context, fake_services) -> None:
    topic_id = await _add_topic(session_factory, "no-list", twitter_list_id="")
    result = await topics.sync_curated_topic(
        make_context(registry.GHOST_QUEUE, registry.JOB_SYNC_CURATED_TOPIC, {"curatedTopicId": str(topic_id)})
    )
    assert result["skipped"] is True
    assert fake_services.twitter.requests == []


@pytest.mark.anyio("asyncio")
async def test_digest_needs_a_minimum_number_of_posts(session_factory, make_context, fake_services) -> None:
    topic_id = await _add_topic(session_factory, "quiet")
    await _add_posts(session_factory, topic_id, 9)

    result = await topics.digest_recent_topics(
        make_context(registry.GHOST_QUEUE, registry.JOB_DIGEST_RECENT_TOPICS, {"curatedTopicId": str(topic_id)})
    )

    assert result == {"curatedTopicId": str(topic_id), "skipped": True, "postsFound": 9}
    assert fake_services.ai.calls == []
    async with session_factory() as session:
        assert (await session.execute(select(TrendingTopic))).scalars().all() == []
        topic = await session.get(CuratedTopic, topic_id)
    assert topic.last_digested_at is None
    assert topic.digest_cost_usd == 0.0


@pytest.mark.anyio("asyncio")
async def test_digest_stores_trending_topics_with_valid_samples(session_factory, make_context, fake_services) -> None:
    topic_id = await _add_topic(session_factory, "busy")
    await _add_posts(session_factory, topic_id, 10)
    async with session_factory() as session:
        session.add(
            TrendingTopic(
                curated_topic_id=topic_id,
                topic_name="stale",
                detected_at=datetime.now(timezone.utc) - timedelta(days=3),
                expires_at=datetime.now(timezone.utc) - timedelta(days=1),
            )
        )
        await session.commit()
    fake_services.ai.extraction = TopicExtraction(
        topics=[ExtractedTopic(topic="GPU prices", context="Prices climb", post_indices=[0, 2, 99, 0])],
        usage=TokenUsage(prompt_tokens=900, completion_tokens=100),
        cost_usd=0.003,
        model="gpt-4o",
    )

    result = await topics.digest_recent_topics(
        make_context(registry.GHOST_QUEUE, registry.JOB_DIGEST_RECENT_TOPICS, {"curatedTopicId": str(topic_id)})
    )

    assert result["topicsStored"] == 1
    assert fake_services.ai.calls == [("extract_trending_topics", 10)]
    async with session_factory() as session:
        [trending] = (await session.execute(select(TrendingTopic))).scalars().all()
        samples = [await session.get(NetworkPost, UUID(post_id)) for post_id in trending.sample_post_ids]
        topic = await session.get(CuratedTopic, topic_id)
    assert trending.topic_name == "GPU prices"
    assert trending.mention_count == 2
    # posts are ranked by engagement, so indices 0 and 2 are the scores 9 and 7
    assert [post.engagement_score for post in samples] == [9.0, 7.0]
    assert trending.total_engagement == pytest.approx(16.0)
    assert trending.rotation_group is None
    assert _as_utc(trending.expires_at) - _as_utc(trending.detected_at) == timedelta(hours=48)
    assert topic.last_digested_at is not None
    assert topic.digest_tokens == 1000
    assert topic.digest_cost_usd == pytest.approx(0.003)
    assert topic.meta["last_digest"]["tokens"] == 1000
    assert topic.meta["last_digest"]["cost_usd"] == pytest.approx(0.003)
    assert topic.meta["last_digest"]["model"] == "gpt-4o"
    assert result["costUsd"] == pytest.approx(0.003)


@pytest.mark.anyio("asyncio")
async def test_digest_cost_accumulates_across_runs(session_factory, make_context, fake_services) -> None:
    topic_id = await _add_topic(session_factory, "repeat")
    fake_services.ai.extraction = TopicExtraction(
        topics=[],
        usage=TokenUsage(prompt_tokens=400, completion_tokens=100),
        cost_usd=0.002,
        model="gpt-4o-mini",
    )
    context = make_context(registry.GHOST_QUEUE, registry.JOB_DIGEST_RECENT_TOPICS, {"curatedTopicId": str(topic_id)})

    await _add_posts(session_factory, topic_id, 10)
    await topics.digest_recent_topics(context)
    async with session_factory() as session:
        topic = await session.get(CuratedTopic, topic_id)
        # new posts land after the first digest window
        topic.last_digested_at = _as_utc(topic.last_digested_at) - timedelta(hours=2)
        await session.commit()
    await topics.digest_recent_topics(context)

    async with session_factory() as session:
        topic = await session.get(CuratedTopic, topic_id)
    assert topic.digest_tokens == 1000
    assert topic.digest_cost_usd == pytest.approx(0.004)
    assert topic.meta["last_digest"]["model"] == "gpt-4o-mini"


@pytest.mark.anyio("asyncio")
async def test_evergreen_digest_rotates_and_never_expires(session_factory, make_context, fake_services) -> None:
    topic_id = await _add_topic(session_factory, "classics", topic_type=TopicType.evergreen)
    await _add_posts(session_factory, topic_id, 12)
    fake_services.ai.extraction = TopicExtraction(
        topics=[ExtractedTopic(topic=f"theme {index}", context=None, post_indices=[index]) for index in range(9)],
        usage=TokenUsage(),
        cost_usd=0.0,
        model="gpt-4o",
    )

    await topics.digest_recent_topics(
        make_context(registry.GHOST_QUEUE, registry.JOB_DIGEST_RECENT_TOPICS, {"curatedTopicId": str(topic_id)})
    )

    async with session_factory() as session:
        rows = (await session.execute(select(TrendingTopic).order_by(TrendingTopic.topic_name))).scalars().all()
        removed = await cleanup.sweep_expired_trending_topics(session, now=datetime.now(timezone.utc) + timedelta(days=365))
    assert [row.rotation_group for row in rows] == [1, 2, 3, 4, 5, 6, 7, 1, 2]
    assert all(row.expires_at is None for row in rows)
    assert removed == 0
