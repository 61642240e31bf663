"""Producer-side helpers: one function per pipeline entry point.

Each takes the process's ``QueueClient`` explicitly and fixes the queue, job
name, priority and stagger for its pipeline so callers only pass ids.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from uuid import UUID

from storyforge.core.config import settings
from storyforge.queues import registry
from storyforge.queues.client import JobHandle, JobOptions, QueueClient

logger = logging.getLogger(__name__)

PRIORITY_STORY_AUDIO = 1
PRIORITY_ARTIFACT_AUDIO = 2
PRIORITY_PAGE = 3
PRIORITY_ACTOR_IMAGE = 5


def _stagger_ms(setting_name: str, default: int) -> int:
    return max(0, int(getattr(settings, setting_name, default) or 0))


def _voice(voice: str | None) -> str:
    return (voice or "").strip() or str(getattr(settings, "audio_default_voice", "nova") or "nova")


def _speed(speed: float | None) -> float:
    if speed is not None:
        return float(speed)
    return float(getattr(settings, "audio_default_speed", 1.0) or 1.0)


async def queue_actor_image_processing(
    client: QueueClient, *, actor_id: UUID, image_key: str, resume_from: str | None = None
) -> JobHandle:
    payload: dict[str, object] = {"actorId": str(actor_id), "imageKey": image_key}
    if resume_from:
        payload["resumeFrom"] = resume_from
    return await client.enqueue(
        registry.MEDIA_QUEUE,
        registry.JOB_PROCESS_ACTOR_IMAGE,
        payload,
        JobOptions(priority=PRIORITY_ACTOR_IMAGE),
    )


async def queue_page_image_generation(client: QueueClient, *, page_id: UUID, delay_ms: int = 0) -> JobHandle:
    return await client.enqueue(
        registry.MEDIA_QUEUE,
        registry.JOB_GENERATE_PAGE_IMAGE,
        {"pageId": str(page_id)},
        JobOptions(priority=PRIORITY_PAGE, delay_ms=delay_ms),
    )


async def queue_batch_page_images(client: QueueClient, page_ids: Sequence[UUID]) -> list[JobHandle]:
    stagger = _stagger_ms("page_image_stagger_ms", 2000)
    return [
        await queue_page_image_generation(client, page_id=page_id, delay_ms=index * stagger)
        for index, page_id in enumerate(page_ids)
    ]


async def queue_image_upload_processing(
    client: QueueClient, *, media_id: UUID, upload: dict[str, object] | None = None
) -> JobHandle:
    return await client.enqueue(
        registry.MEDIA_QUEUE,
        registry.JOB_PROCESS_IMAGE_UPLOAD,
        {"mediaId": str(media_id), "upload": dict(upload or {})},
        JobOptions(priority=PRIORITY_PAGE),
    )


async def queue_page_audio_generation(
    client: QueueClient,
    *,
    page_id: UUID,
    voice: str | None = None,
    speed: float | None = None,
    delay_ms: int = 0,
) -> JobHandle:
    return await client.enqueue(
        registry.MEDIA_QUEUE,
        registry.JOB_GENERATE_PAGE_AUDIO,
        {"pageId": str(page_id), "voice": _voice(voice), "speed": _speed(speed)},
        JobOptions(priority=PRIORITY_PAGE, delay_ms=delay_ms),
    )


async def queue_batch_page_audio(
    client: QueueClient, page_ids: Sequence[UUID], *, voice: str | None = None, speed: float | None = None
) -> list[JobHandle]:
    stagger = _stagger_ms("page_audio_stagger_ms", 3000)
    return [
        await queue_page_audio_generation(client, page_id=page_id, voice=voice, speed=speed, delay_ms=index * stagger)
        for index, page_id in enumerate(page_ids)
    ]


async def queue_artifact_audio_generation(
    client: QueueClient, *, artifact_id: UUID, voice: str | None = None, speed: float | None = None
) -> JobHandle:
    return await client.enqueue(
        registry.MEDIA_QUEUE,
        registry.JOB_GENERATE_ARTIFACT_AUDIO,
        {"artifactId": str(artifact_id), "voice": _voice(voice), "speed": _speed(speed)},
        JobOptions(priority=PRIORITY_ARTIFACT_AUDIO),
    )


async def queue_story_audio_generation(
    client: QueueClient, *, artifact_id: UUID, voice: str | None = None, speed: float | None = None
) -> JobHandle:
    return await client.enqueue(
        registry.MEDIA_QUEUE,
        registry.JOB_GENERATE_STORY_AUDIO,
        {"artifactId": str(artifact_id), "voice": _voice(voice), "speed": _speed(speed)},
        JobOptions(priority=PRIORITY_STORY_AUDIO),
    )


async def queue_artifact_video_generation(
    client: QueueClient, *, artifact_id: UUID, audio_media_id: UUID | None = None, delay_ms: int = 0
) -> JobHandle:
    payload: dict[str, object] = {"artifactId": str(artifact_id)}
    if audio_media_id is not None:
        payload["audioMediaId"] = str(audio_media_id)
    return await client.enqueue(
        registry.VIDEO_QUEUE,
        registry.JOB_GENERATE_ARTIFACT_VIDEO,
        payload,
        JobOptions(delay_ms=delay_ms),
    )


async def queue_story_generation(client: QueueClient, *, artifact_id: UUID, regenerate: bool = False) -> JobHandle:
    return await client.enqueue(
        registry.CONTENT_QUEUE,
        registry.JOB_GENERATE_STORY,
        {"artifactId": str(artifact_id), "regenerate": bool(regenerate)},
    )


async def queue_story_images_generation(client: QueueClient, *, artifact_id: UUID, style: str | None = None) -> JobHandle:
    payload: dict[str, object] = {"artifactId": str(artifact_id)}
    if style:
        payload["style"] = style
    return await client.enqueue(registry.CONTENT_QUEUE, registry.JOB_GENERATE_STORY_IMAGES, payload)
