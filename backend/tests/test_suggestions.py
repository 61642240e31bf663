from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select

from storyforge.core.errors import RecordNotFoundError
from storyforge.jobs import suggestions
from storyforge.models.content import Account
from storyforge.models.ghost import ConnectedAccount, PostSuggestion, UserTopicPreference
from storyforge.models.jobs import BackgroundJob
from storyforge.models.topics import CuratedTopic, TopicType, TrendingTopic
from storyforge.queues import registry
from storyforge.schedules.suggestions import trigger_manual_suggestions_for_all

# a Wednesday
FIXED_NOW = datetime(2026, 10, 14, 9, 30, tzinfo=timezone.utc)


async def _add_connection(session_factory, *, hour: int | None = 9, tz: str | None = "Europe/Bucharest", **fields) -> UUID:
    fields.setdefault("platform", "twitter")
    fields.setdefault("sync_status", "ready")
    async with session_factory() as session:
        account = Account(name="Ana", timezone=tz, generation_time_utc=hour)
        session.add(account)
        await session.flush()
        connection = ConnectedAccount(account_id=account.id, **fields)
        session.add(connection)
        await session.commit()
        return connection.id


async def _suggestion_jobs(session_factory) -> list[BackgroundJob]:
    async with session_factory() as session:
        rows = await session.execute(
            select(BackgroundJob).where(BackgroundJob.job_name == registry.JOB_GENERATE_SUGGESTIONS)
        )
        return list(rows.scalars().all())


@pytest.mark.anyio("asyncio")
async def test_eligibility_covers_ready_and_ghost_accounts(session_factory) -> None:
    ready = await _add_connection(session_factory)
    ghost = await _add_connection(session_factory, platform="ghost", sync_status="pending", topics_of_interest="rust, databases")
    await _add_connection(session_factory, platform="ghost", sync_status="pending", topics_of_interest="")
    await _add_connection(session_factory, sync_status="pending")
    await _add_connection(session_factory, is_active=False)

    async with session_factory() as session:
        eligible = {connection.id for connection in await suggestions.eligible_connected_accounts(session)}
        assert await suggestions.eligible_connected_accounts(session, account_ids=[]) == []

    assert eligible == {ready, ghost}


@pytest.mark.anyio("asyncio")
async def test_automated_cycle_only_queues_accounts_due_this_hour(
    session_factory, make_context, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(suggestions, "_now", lambda: FIXED_NOW)
    due = await _add_connection(session_factory, hour=9)
    await _add_connection(session_factory, hour=10)
    await _add_connection(session_factory, hour=9, tz=None)

    result = await suggestions.generate_suggestions_automated(
        make_context(registry.GHOST_QUEUE, registry.JOB_GENERATE_SUGGESTIONS_AUTOMATED, {})
    )

    assert result == {"utcHour": 9, "accountsScheduled": 1, "jobsQueued": 1}
    [job] = await _suggestion_jobs(session_factory)
    assert job.payload == {
        "connectedAccountId": str(due),
        "suggestionCount": 3,
        "automated": True,
        "triggeredAt": FIXED_NOW.isoformat(),
    }


@pytest.mark.anyio("asyncio")
async def test_manual_trigger_queues_every_eligible_account(session_factory, queue_client) -> None:
    first = await _add_connection(session_factory, hour=3)
    second = await _add_connection(session_factory, hour=None, tz=None)
    await _add_connection(session_factory, is_active=False)

    handles = await trigger_manual_suggestions_for_all(queue_client)

    assert len(handles) == 2
    jobs = await _suggestion_jobs(session_factory)
    assert {job.payload["connectedAccountId"] for job in jobs} == {str(first), str(second)}
    assert {job.payload["automated"] for job in jobs} == {False}


def test_suggestion_count_is_clamped() -> None:
    assert suggestions._suggestion_count(None) == 3
    assert suggestions._suggestion_count("7") == 7
    assert suggestions._suggestion_count(0) == 1
    assert suggestions._suggestion_count(500) == suggestions.MAX_SUGGESTIONS_PER_RUN
    assert suggestions._suggestion_count("many") == 3


async def _add_trending(session, topic_id: UUID, name: str, *, engagement: float, **fields) -> TrendingTopic:
    trending = TrendingTopic(
        curated_topic_id=topic_id,
        topic_name=name,
        total_engagement=engagement,
        detected_at=FIXED_NOW - timedelta(hours=1),
        **fields,
    )
    session.add(trending)
    return trending


@pytest.mark.anyio("asyncio")
async def test_generate_suggestions_uses_live_and_todays_evergreen_topics(
    session_factory, make_context, fake_services, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(suggestions, "_now", lambda: FIXED_NOW)
    connection_id = await _add_connection(session_factory, voice="dry humour", topics_of_interest="chips")
    async with session_factory() as session:
        realtime = CuratedTopic(slug="chips", name="Chips", twitter_list_id="l1")
        evergreen = CuratedTopic(slug="craft", name="Craft", topic_type=TopicType.evergreen)
        other = CuratedTopic(slug="other", name="Other", twitter_list_id="l2")
        session.add_all([realtime, evergreen, other])
        await session.flush()
        session.add_all(
            [
                UserTopicPreference(connected_account_id=connection_id, curated_topic_id=realtime.id),
                UserTopicPreference(connected_account_id=connection_id, curated_topic_id=evergreen.id),
            ]
        )
        live = await _add_trending(session, realtime.id, "GPU prices", engagement=50.0, expires_at=FIXED_NOW + timedelta(hours=5))
        await _add_trending(session, realtime.id, "old news", engagement=90.0, expires_at=FIXED_NOW - timedelta(hours=1))
        # Wednesday is rotation group 3
        today = await _add_trending(session, evergreen.id, "habits", engagement=10.0, rotation_group=3)
        await _add_trending(session, evergreen.id, "tools", engagement=80.0, rotation_group=4)
        await _add_trending(session, other.id, "unfollowed", engagement=99.0, expires_at=FIXED_NOW + timedelta(hours=5))
        await session.commit()
        live_id, today_id = live.id, today.id

    result = await suggestions.generate_suggestions(
        make_context(
            registry.GHOST_QUEUE,
            registry.JOB_GENERATE_SUGGESTIONS,
            {"connectedAccountId": str(connection_id), "suggestionCount": 3, "automated": True},
        )
    )

    assert result["created"] == 3
    assert result["costUsd"] == pytest.approx(0.0021)
    prompts = [prompt for name, prompt in fake_services.ai.calls if name == "generate_post"]
    assert "Trending topic: GPU prices" in prompts[0]
    assert "Author voice: dry humour" in prompts[0]
    assert "Trending topic: habits" in prompts[1]
    async with session_factory() as session:
        stored = (await session.execute(select(PostSuggestion))).scalars().all()
    assert [row.trending_topic_id for row in stored].count(live_id) == 2
    assert [row.trending_topic_id for row in stored].count(today_id) == 1
    assert all(row.meta["automated"] is True and row.meta["rotation_group"] == 3 for row in stored)


@pytest.mark.anyio("asyncio")
async def test_generate_suggestions_without_preferences_still_writes_posts(session_factory, make_context) -> None:
    connection_id = await _add_connection(session_factory)

    result = await suggestions.generate_suggestions(
        make_context(
            registry.GHOST_QUEUE,
            registry.JOB_GENERATE_SUGGESTIONS,
            {"connectedAccountId": str(connection_id), "suggestionCount": 1},
        )
    )

    assert result["created"] == 1
    async with session_factory() as session:
        [row] = (await session.execute(select(PostSuggestion))).scalars().all()
    assert row.trending_topic_id is None
    assert row.meta["automated"] is False


@pytest.mark.anyio("asyncio")
async def test_inactive_connection_is_skipped(session_factory, make_context, fake_services) -> None:
    connection_id = await _add_connection(session_factory, is_active=False)

    result = await suggestions.generate_suggestions(
        make_context(registry.GHOST_QUEUE, registry.JOB_GENERATE_SUGGESTIONS, {"connectedAccountId": str(connection_id)})
    )

    assert result == {"connectedAccountId": str(connection_id), "skipped": True, "created": 0}
    assert fake_services.ai.calls == []


@pytest.mark.anyio("asyncio")
async def test_missing_connection_is_a_permanent_failure(make_context) -> None:
    with pytest.raises(RecordNotFoundError):
        await suggestions.generate_suggestions(
            make_context(registry.GHOST_QUEUE, registry.JOB_GENERATE_SUGGESTIONS, {"connectedAccountId": str(uuid4())})
        )
