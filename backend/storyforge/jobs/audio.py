"""Narration pipelines: per page, fanned out per artifact, and whole-story audio."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from storyforge.core.config import settings
from storyforge.core.errors import PermanentJobError, RecordNotFoundError
from storyforge.jobs.context import JobContext, payload_str, require_uuid
from storyforge.jobs.text_resolver import combine_pages, resolve_page_text
from storyforge.models.content import Artifact, ArtifactPage
from storyforge.models.media import MediaOwnerType, MediaType
from storyforge.queues import enqueuers
from storyforge.services import media_lifecycle
from storyforge.services.ai import GeneratedAudio

logger = logging.getLogger(__name__)


def _voice_and_speed(payload: dict[str, Any]) -> tuple[str, float]:
    voice = payload_str(payload, "voice") or str(getattr(settings, "audio_default_voice", "nova") or "nova")
    try:
        speed = float(payload.get("speed") or getattr(settings, "audio_default_speed", 1.0) or 1.0)
    except (TypeError, ValueError):
        speed = 1.0
    return voice, speed


def _audio_metadata(audio: GeneratedAudio, *, text: str, speed: float) -> dict[str, Any]:
    return {
        "filename": audio.filename,
        "text": text,
        "character_count": audio.character_count,
        "size_bytes": audio.size_bytes,
        "voice": audio.voice,
        "speed": speed,
        "model": audio.model,
        "cost_usd": audio.cost_usd,
    }


def _chains_video(artifact: Artifact) -> bool:
    slugs = {str(slug).strip().lower() for slug in (getattr(settings, "video_chain_app_slugs", None) or [])}
    return artifact.app is not None and (artifact.app.slug or "").strip().lower() in slugs


async def generate_page_audio(ctx: JobContext) -> dict[str, Any]:
    page_id = require_uuid(ctx.payload, "pageId")
    voice, speed = _voice_and_speed(ctx.payload)
    ai = ctx.services.ai
    if ai is None:
        raise RuntimeError("generate-page-audio needs the AI service")

    async with ctx.session_factory() as session:
        page = await session.get(ArtifactPage, page_id)
        if page is None:
            raise RecordNotFoundError("ArtifactPage", page_id)
        text = resolve_page_text(page)
        if not text:
            raise PermanentJobError(f"Page {page_id} has no text to narrate")

        audio = await ai.generate_audio(text, voice, speed=speed, account_id=str(page.account_id))
        media = await media_lifecycle.create_committed_media(
            session,
            account_id=page.account_id,
            owner_type=MediaOwnerType.artifact_page,
            owner_id=page.id,
            media_type=MediaType.audio,
            key=audio.audio_key,
            metadata=_audio_metadata(audio, text=text, speed=speed),
        )
        meta = dict(page.meta or {})
        meta["audio_media_id"] = str(media.id)
        page.meta = meta
        await session.commit()
        media_id = media.id

    logger.info(
        "page_audio_generated",
        extra={"page_id": str(page_id), "media_id": str(media_id), "cost_usd": audio.cost_usd},
    )
    return {"pageId": str(page_id), "mediaId": str(media_id), "costUsd": audio.cost_usd}


async def generate_artifact_audio(ctx: JobContext) -> dict[str, Any]:
    artifact_id = require_uuid(ctx.payload, "artifactId")
    voice, speed = _voice_and_speed(ctx.payload)

    async with ctx.session_factory() as session:
        exists = await session.scalar(select(Artifact.id).where(Artifact.id == artifact_id))
        if exists is None:
            raise RecordNotFoundError("Artifact", artifact_id)
        pages = (
            await session.execute(
                select(ArtifactPage)
                .where(ArtifactPage.artifact_id == artifact_id)
                .order_by(ArtifactPage.page_number.asc())
            )
        ).scalars().all()
        page_ids = [page.id for page in pages if resolve_page_text(page)]

    handles = await enqueuers.queue_batch_page_audio(ctx.queue, page_ids, voice=voice, speed=speed)
    logger.info("artifact_audio_fanned_out", extra={"artifact_id": str(artifact_id), "pages": len(handles)})
    return {"artifactId": str(artifact_id), "pagesQueued": len(handles)}


async def generate_story_audio(ctx: JobContext) -> dict[str, Any]:
    artifact_id = require_uuid(ctx.payload, "artifactId")
    voice, speed = _voice_and_speed(ctx.payload)
    ai = ctx.services.ai
    if ai is None:
        raise RuntimeError("generate-story-audio needs the AI service")

    async with ctx.session_factory() as session:
        artifact = await session.get(Artifact, artifact_id)
        if artifact is None:
            raise RecordNotFoundError("Artifact", artifact_id)
        text = combine_pages(artifact.pages)
        if not text:
            raise PermanentJobError(f"Artifact {artifact_id} has no page text to narrate")

        audio = await ai.generate_audio(text, voice, speed=speed, account_id=str(artifact.account_id))
        metadata = _audio_metadata(audio, text=text, speed=speed)
        metadata["page_count"] = len(artifact.pages)
        media = await media_lifecycle.create_committed_media(
            session,
            account_id=artifact.account_id,
            owner_type=MediaOwnerType.artifact,
            owner_id=artifact.id,
            media_type=MediaType.audio,
            key=audio.audio_key,
            metadata=metadata,
        )
        meta = dict(artifact.meta or {})
        meta["has_audio"] = True
        meta["audio_media_id"] = str(media.id)
        artifact.meta = meta
        await session.commit()
        media_id = media.id
        chain_video = _chains_video(artifact)

    logger.info(
        "story_audio_generated",
        extra={
            "artifact_id": str(artifact_id),
            "media_id": str(media_id),
            "character_count": audio.character_count,
            "cost_usd": audio.cost_usd,
        },
    )

    video_job_id = None
    if chain_video:
        # the audio blob needs a moment to become readable before the renderer fetches it
        delay_ms = max(0, int(getattr(settings, "video_chain_delay_ms", 5000) or 0))
        try:
            handle = await enqueuers.queue_artifact_video_generation(
                ctx.queue, artifact_id=artifact_id, audio_media_id=media_id, delay_ms=delay_ms
            )
            video_job_id = str(handle.id)
        except Exception:
            logger.exception("video_chain_enqueue_failed", extra={"artifact_id": str(artifact_id)})

    return {
        "artifactId": str(artifact_id),
        "mediaId": str(media_id),
        "costUsd": audio.cost_usd,
        "videoJobId": video_job_id,
    }
