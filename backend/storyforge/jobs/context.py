"""What a pipeline handler receives, and how handlers are registered per queue."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyforge.core.errors import HandlerRegistrationError, PermanentJobError
from storyforge.queues.client import QueueClient
from storyforge.services.ai import AIService
from storyforge.services.storage import StorageService
from storyforge.services.twitter import TwitterClient
from storyforge.services.video_render import VideoRenderer


@dataclass
class Services:
    ai: AIService | None = None
    storage: StorageService | None = None
    twitter: TwitterClient | None = None
    video_renderer: VideoRenderer | None = None


@dataclass
class JobContext:
    job_id: UUID
    queue_name: str
    job_name: str
    payload: dict[str, Any]
    queue: QueueClient
    session_factory: async_sessionmaker[AsyncSession]
    services: Services = field(default_factory=Services)
    attempt: int = 1
    max_attempts: int = 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    async def update_progress(self, progress: int) -> None:
        await self.queue.update_progress(self.job_id, progress)


JobHandler = Callable[[JobContext], Awaitable[dict[str, Any] | None]]


def build_handler_map(pairs: Iterable[tuple[str, JobHandler]]) -> dict[str, JobHandler]:
    """Turn ``(job_name, handler)`` pairs into a map, refusing duplicate names."""
    handlers: dict[str, JobHandler] = {}
    for job_name, handler in pairs:
        name = (job_name or "").strip()
        if not name:
            raise HandlerRegistrationError("Job handlers need a non-empty job name")
        if name in handlers:
            raise HandlerRegistrationError(f"Handler for {name!r} registered twice")
        handlers[name] = handler
    return handlers


def payload_str(payload: dict[str, Any], *keys: str) -> str | None:
    """First non-empty string value among ``keys`` (camelCase and snake_case producers coexist)."""
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def payload_uuid(payload: dict[str, Any], *keys: str) -> UUID | None:
    raw = payload_str(payload, *keys)
    if raw is None:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


def require_uuid(payload: dict[str, Any], key: str) -> UUID:
    value = payload_uuid(payload, key)
    if value is None:
        raise PermanentJobError(f"Job payload is missing a valid {key}")
    return value
