import asyncio
import os
from collections.abc import Generator
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy.ext import asyncio as sa_asyncio

# Keep test runs offline: no Sentry capture, no Redis, and a throwaway sqlite engine for db.session.
os.environ["SENTRY_DSN"] = ""
os.environ["REDIS_URL"] = ""
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("QUEUE_WORKER_HEARTBEAT_FILE", "/tmp/storyforge-test-heartbeat.json")

from storyforge.core import metrics
from storyforge.db.base import Base
from storyforge.jobs.context import JobContext, Services
from storyforge.queues.client import QueueClient
from storyforge.services.ai import (
    GeneratedAudio,
    GeneratedImage,
    GeneratedPost,
    GeneratedStory,
    ImageAnalysis,
    ImagePrompt,
    StoryPage,
    TokenUsage,
    TopicExtraction,
    calculate_tts_cost,
)
from storyforge.services.twitter import ListTweet
from storyforge.services.video_render import RenderedVideo, RenderRequest
import storyforge.models  # noqa: F401


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            try:
                await engine.dispose()
            except Exception:
                continue

    try:
        asyncio.run(_dispose_all())
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(_dispose_all())
        finally:
            loop.close()

    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # counters are process-global and leak across tests otherwise
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
async def session_factory(anyio_backend, tmp_path):  # type: ignore[no-untyped-def]
    engine = sa_asyncio.create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sa_asyncio.async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def queue_client(session_factory) -> QueueClient:  # type: ignore[no-untyped-def]
    return QueueClient(session_factory, redis=None)


class FakeAI:
    """In-memory stand-in for the AI collaborator; records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.avatar_error: Exception | None = None
        self.page_image_error: Exception | None = None
        self.story_error: Exception | None = None
        self.extraction: TopicExtraction | None = None
        self.story_pages: list[StoryPage] = [
            StoryPage(text=["Once upon a time."], image_prompt="a fox at dawn"),
            StoryPage(text=["The end."], image_prompt=None),
        ]
        self._audio_count = 0

    async def analyze_image(self, image_url: str, context: dict[str, Any]) -> ImageAnalysis:
        self.calls.append(("analyze_image", image_url))
        return ImageAnalysis(
            description={"appearance": "short red hair", "clothing": "yellow raincoat"},
            usage=TokenUsage(prompt_tokens=400, completion_tokens=100),
            cost_usd=0.002,
            model="gpt-4o",
        )

    async def generate_avatar(self, continuity: dict[str, Any], actor: dict[str, Any], *, account_id: str) -> GeneratedImage:
        self.calls.append(("generate_avatar", continuity))
        if self.avatar_error is not None:
            raise self.avatar_error
        return GeneratedImage(
            image_key=f"avatars/{account_id}/avatar.png",
            cost_usd=0.042,
            model="gpt-image-1",
            prompt_used="portrait",
            generation_seconds=1.5,
        )

    async def generate_page_image(
        self, prompt: str, characters: list[dict[str, Any]], *, account_id: str
    ) -> GeneratedImage:
        self.calls.append(("generate_page_image", prompt))
        if self.page_image_error is not None:
            raise self.page_image_error
        return GeneratedImage(
            image_key=f"pages/{account_id}/page.png",
            cost_usd=0.042,
            model="gpt-image-1",
            prompt_used=prompt,
            generation_seconds=2.0,
        )

    async def generate_image_prompt(self, text: str, style: str) -> ImagePrompt:
        self.calls.append(("generate_image_prompt", text))
        return ImagePrompt(prompt=f"{style}: {text}", usage=TokenUsage(prompt_tokens=50, completion_tokens=30), cost_usd=0.0005)

    async def generate_story(self, prompt: str, actors: list[dict[str, Any]]) -> GeneratedStory:
        self.calls.append(("generate_story", prompt))
        if self.story_error is not None:
            raise self.story_error
        return GeneratedStory(
            title="The Fox",
            description="A short fable",
            pages=list(self.story_pages),
            usage=TokenUsage(prompt_tokens=300, completion_tokens=700),
            cost_usd=0.00775,
            model="gpt-4o",
        )

    async def generate_audio(self, text: str, voice: str, *, speed: float, account_id: str) -> GeneratedAudio:
        self.calls.append(("generate_audio", text))
        self._audio_count += 1
        return GeneratedAudio(
            filename=f"narration-{self._audio_count}.mp3",
            audio_key=f"audio/{account_id}/narration-{self._audio_count}.mp3",
            cost_usd=calculate_tts_cost("tts-1", len(text)),
            size_bytes=2048,
            character_count=len(text),
            voice=voice,
            model="tts-1",
        )

    async def generate_post(self, prompt: str, options: dict[str, Any]) -> GeneratedPost:
        self.calls.append(("generate_post", prompt))
        return GeneratedPost(
            content="Hot take about the topic",
            usage=TokenUsage(prompt_tokens=120, completion_tokens=40),
            cost_usd=0.0007,
            model="gpt-4o",
        )

    async def extract_trending_topics(self, topic_name: str, posts: list[str]) -> TopicExtraction:
        self.calls.append(("extract_trending_topics", len(posts)))
        if self.extraction is not None:
            return self.extraction
        return TopicExtraction(topics=[], usage=TokenUsage(), cost_usd=0.0, model="gpt-4o")


class FakeStorage:
    def __init__(self) -> None:
        self.deleted: list[str] = []
        self.delete_error: Exception | None = None

    def get_signed_url(self, key: str, variant: str = "public", ttl_seconds: int | None = None) -> str:
        return f"https://media.test/{key}?variant={variant}&ttl={ttl_seconds}"

    async def put_object(self, key: str, data: bytes, *, content_type: str) -> str:
        return key

    async def delete_object(self, key: str) -> bool:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(key)
        return True


class FakeTwitter:
    def __init__(self, tweets: list[ListTweet] | None = None) -> None:
        self.tweets = list(tweets or [])
        self.requests: list[tuple[str, int]] = []

    async def fetch_list_tweets(self, list_id: str, *, max_results: int = 100) -> list[ListTweet]:
        self.requests.append((list_id, max_results))
        return list(self.tweets)


class FakeRenderer:
    def __init__(self) -> None:
        self.requests: list[RenderRequest] = []
        self.error: Exception | None = None

    async def render(self, request: RenderRequest) -> RenderedVideo:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return RenderedVideo(
            filename="story.mp4",
            video_key=f"video/{request.artifact_id}.mp4",
            size_bytes=4096,
            duration_seconds=42.0,
            generation_seconds=3.0,
        )


@pytest.fixture
def fake_services() -> Services:
    return Services(ai=FakeAI(), storage=FakeStorage(), twitter=FakeTwitter(), video_renderer=FakeRenderer())


@pytest.fixture
def make_context(queue_client, session_factory, fake_services):  # type: ignore[no-untyped-def]
    def _make(queue_name: str, job_name: str, payload: dict[str, Any], **kwargs: Any) -> JobContext:
        return JobContext(
            job_id=kwargs.pop("job_id", None) or uuid4(),
            queue_name=queue_name,
            job_name=job_name,
            payload=payload,
            queue=queue_client,
            session_factory=session_factory,
            services=kwargs.pop("services", fake_services),
            **kwargs,
        )

    return _make
