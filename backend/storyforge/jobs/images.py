"""Image pipelines on the media queue: actor avatars, page illustrations, upload post-processing."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from storyforge.core.errors import PermanentJobError, RecordNotFoundError
from storyforge.jobs.context import JobContext, payload_str, require_uuid
from storyforge.jobs.text_resolver import resolve_page_text
from storyforge.models.content import Actor, Artifact, ArtifactPage, ImageStatus, PageImageStatus
from storyforge.models.media import Media, MediaStatus
from storyforge.queues import enqueuers
from storyforge.queues.client import JobHandle, QueueClient
from storyforge.services.storage import VARIANT_THUMBNAIL

logger = logging.getLogger(__name__)

# Order in which the actor pipeline runs; a run may start at any of them.
ACTOR_IMAGE_STAGES: tuple[ImageStatus, ...] = (ImageStatus.analyzing, ImageStatus.generating_avatar)
ANALYSIS_URL_TTL_SECONDS = 600


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _error_meta(meta: dict | None, exc: BaseException) -> dict[str, Any]:
    merged = dict(meta or {})
    merged["error"] = str(exc) or type(exc).__name__
    merged["failed_at"] = _now().isoformat()
    return merged


def resume_stage(actor: Actor) -> ImageStatus | None:
    """Stage a re-drive of ``actor`` should start from, or None when there is nothing left to do.

    Analysis output is the only checkpoint: with a stored continuity the
    avatar step can run on its own.
    """
    if actor.image_status == ImageStatus.completed:
        return None
    if actor.character_continuity and actor.image_status in (ImageStatus.generating_avatar, ImageStatus.failed):
        return ImageStatus.generating_avatar
    return ImageStatus.analyzing


async def resume_actor_image_pipeline(
    client: QueueClient,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    actor_id: UUID,
    stage: ImageStatus | None = None,
) -> JobHandle | None:
    async with session_factory() as session:
        actor = await session.get(Actor, actor_id)
        if actor is None:
            raise RecordNotFoundError("Actor", actor_id)
        start = stage or resume_stage(actor)
        image_key = actor.image_key
    if start is None:
        logger.info("actor_image_resume_skipped", extra={"actor_id": str(actor_id)})
        return None
    if start not in ACTOR_IMAGE_STAGES:
        raise ValueError(f"Cannot resume the actor image pipeline from {start.value!r}")
    if not image_key:
        raise PermanentJobError(f"Actor {actor_id} has no source image")
    logger.info("actor_image_resume_queued", extra={"actor_id": str(actor_id), "stage": start.value})
    return await enqueuers.queue_actor_image_processing(
        client, actor_id=actor_id, image_key=image_key, resume_from=start.value
    )


def _start_stage(raw: str | None, actor: Actor) -> ImageStatus:
    try:
        stage = ImageStatus(raw) if raw else ImageStatus.analyzing
    except ValueError:
        stage = ImageStatus.analyzing
    if stage not in ACTOR_IMAGE_STAGES:
        stage = ImageStatus.analyzing
    if stage == ImageStatus.generating_avatar and not actor.character_continuity:
        return ImageStatus.analyzing
    return stage


async def _mark_actor_failed(
    session_factory: async_sessionmaker[AsyncSession], actor_id: UUID, exc: BaseException
) -> None:
    async with session_factory() as session:
        actor = await session.get(Actor, actor_id)
        if actor is None:
            return
        actor.image_status = ImageStatus.failed
        actor.meta = _error_meta(actor.meta, exc)
        await session.commit()


async def process_actor_image(ctx: JobContext) -> dict[str, Any]:
    actor_id = require_uuid(ctx.payload, "actorId")
    ai = ctx.services.ai
    storage = ctx.services.storage
    if ai is None or storage is None:
        raise RuntimeError("process-actor-image needs the AI and storage services")

    async with ctx.session_factory() as session:
        actor = await session.get(Actor, actor_id)
        if actor is None:
            raise RecordNotFoundError("Actor", actor_id)
        image_key = payload_str(ctx.payload, "imageKey") or actor.image_key
        if not image_key:
            raise PermanentJobError(f"Actor {actor_id} has no source image")
        start = _start_stage(payload_str(ctx.payload, "resumeFrom"), actor)
        actor_info = {"name": actor.name, "actor_type": actor.actor_type}
        total_cost = 0.0
        analysis_model = None

        try:
            if start == ImageStatus.analyzing:
                actor.image_key = image_key
                actor.image_status = ImageStatus.analyzing
                await session.commit()

                # the thumbnail is enough for a description and costs far fewer vision tokens
                image_url = storage.get_signed_url(image_key, VARIANT_THUMBNAIL, ANALYSIS_URL_TTL_SECONDS)
                analysis = await ai.analyze_image(image_url, actor_info)
                actor.character_continuity = dict(analysis.description)
                actor.analysis_tokens = analysis.usage.total_tokens
                actor.analysis_cost_usd = analysis.cost_usd
                actor.image_status = ImageStatus.generating_avatar
                await session.commit()
                total_cost += analysis.cost_usd
                analysis_model = analysis.model
                logger.info(
                    "actor_image_analysis_completed",
                    extra={"actor_id": str(actor_id), "tokens": analysis.usage.total_tokens, "cost_usd": analysis.cost_usd},
                )
            else:
                total_cost += float(actor.analysis_cost_usd or 0.0)
                actor.image_status = ImageStatus.generating_avatar
                await session.commit()

            avatar = await ai.generate_avatar(
                dict(actor.character_continuity or {}), actor_info, account_id=str(actor.account_id)
            )
            total_cost += avatar.cost_usd
            actor.avatar_image_key = avatar.image_key
            actor.avatar_generation_cost_usd = avatar.cost_usd
            actor.image_status = ImageStatus.completed
            actor.image_processed_at = _now()
            meta = dict(actor.meta or {})
            meta.pop("error", None)
            meta.pop("failed_at", None)
            meta["image_processing"] = {
                "total_cost_usd": round(total_cost, 6),
                "analysis_model": analysis_model,
                "avatar_model": avatar.model,
                "started_from": start.value,
            }
            actor.meta = meta
            await session.commit()
        except Exception as exc:
            await session.rollback()
            logger.warning(
                "actor_image_pipeline_failed",
                extra={"actor_id": str(actor_id), "stage": start.value, "error": str(exc)},
            )
            await _mark_actor_failed(ctx.session_factory, actor_id, exc)
            raise

    logger.info("actor_image_pipeline_completed", extra={"actor_id": str(actor_id), "cost_usd": round(total_cost, 6)})
    return {"actorId": str(actor_id), "avatarImageKey": avatar.image_key, "totalCostUsd": round(total_cost, 6)}


async def generate_page_image(ctx: JobContext) -> dict[str, Any]:
    page_id = require_uuid(ctx.payload, "pageId")
    ai = ctx.services.ai
    if ai is None:
        raise RuntimeError("generate-page-image needs the AI service")

    async with ctx.session_factory() as session:
        page = await session.scalar(
            select(ArtifactPage)
            .where(ArtifactPage.id == page_id)
            .options(selectinload(ArtifactPage.artifact).selectinload(Artifact.actors))
        )
        if page is None:
            raise RecordNotFoundError("ArtifactPage", page_id)
        prompt = (page.image_prompt or "").strip() or resolve_page_text(page)
        if not prompt:
            raise PermanentJobError(f"Page {page_id} has neither an image prompt nor text")
        characters = [
            {"name": actor.name, "continuity": actor.character_continuity}
            for actor in page.artifact.actors
            if actor.character_continuity
        ]
        page.image_status = PageImageStatus.generating
        await session.commit()

        try:
            image = await ai.generate_page_image(prompt, characters, account_id=str(page.account_id))
        except Exception as exc:
            page.image_status = PageImageStatus.failed
            page.meta = _error_meta(page.meta, exc)
            await session.commit()
            raise

        page.image_key = image.image_key
        page.image_status = PageImageStatus.completed
        page.image_generation_cost_usd = image.cost_usd
        page.image_ai_model = image.model
        page.image_generated_at = _now()
        meta = dict(page.meta or {})
        meta.pop("error", None)
        meta.pop("failed_at", None)
        meta["image_generation_seconds"] = image.generation_seconds
        page.meta = meta
        await session.commit()

    logger.info("page_image_generated", extra={"page_id": str(page_id), "cost_usd": image.cost_usd})
    return {"pageId": str(page_id), "imageKey": image.image_key, "costUsd": image.cost_usd}


async def process_image_upload(ctx: JobContext) -> dict[str, Any]:
    media_id = require_uuid(ctx.payload, "mediaId")
    upload = ctx.payload.get("upload")
    async with ctx.session_factory() as session:
        media = await session.get(Media, media_id)
        if media is None:
            raise RecordNotFoundError("Media", media_id)
        if media.status == MediaStatus.expired:
            logger.info("image_upload_processing_skipped", extra={"media_id": str(media_id), "reason": "expired"})
            return {"mediaId": str(media_id), "skipped": True}
        meta = dict(media.meta or {})
        if isinstance(upload, dict):
            meta.update(upload)
        meta["processed_at"] = _now().isoformat()
        media.meta = meta
        await session.commit()
    logger.info("image_upload_processed", extra={"media_id": str(media_id)})
    return {"mediaId": str(media_id), "skipped": False}
