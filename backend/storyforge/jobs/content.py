"""Story generation on the content queue, then per-page illustration prompts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyforge.core.errors import RecordNotFoundError
from storyforge.jobs.context import JobContext, payload_str, require_uuid
from storyforge.jobs.text_resolver import resolve_page_text
from storyforge.models.content import Artifact, ArtifactPage, ArtifactStatus
from storyforge.queues import enqueuers

logger = logging.getLogger(__name__)

DEFAULT_ILLUSTRATION_STYLE = "children's picture book illustration"


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _mark_artifact_failed(
    session_factory: async_sessionmaker[AsyncSession], artifact_id: UUID, exc: BaseException
) -> None:
    async with session_factory() as session:
        artifact = await session.get(Artifact, artifact_id)
        if artifact is None:
            return
        artifact.status = ArtifactStatus.failed
        meta = dict(artifact.meta or {})
        meta["error"] = str(exc) or type(exc).__name__
        meta["failed_at"] = _now().isoformat()
        artifact.meta = meta
        await session.commit()


async def generate_story(ctx: JobContext) -> dict[str, Any]:
    artifact_id = require_uuid(ctx.payload, "artifactId")
    regenerate = bool(ctx.payload.get("regenerate"))
    ai = ctx.services.ai
    if ai is None:
        raise RuntimeError("generate-story needs the AI service")

    async with ctx.session_factory() as session:
        artifact = await session.get(Artifact, artifact_id)
        if artifact is None:
            raise RecordNotFoundError("Artifact", artifact_id)
        if artifact.status == ArtifactStatus.completed and not regenerate:
            logger.info("story_generation_skipped", extra={"artifact_id": str(artifact_id)})
            return {"artifactId": str(artifact_id), "skipped": True}

        prompt = (artifact.input.prompt if artifact.input is not None else "") or str(
            (artifact.meta or {}).get("prompt") or ""
        )
        actors = [
            {"name": actor.name, "actor_type": actor.actor_type, "continuity": actor.character_continuity}
            for actor in artifact.actors
        ]
        artifact.status = ArtifactStatus.generating
        await session.commit()

        try:
            story = await ai.generate_story(prompt, actors)
            # a retry or a regenerate replaces every page of the previous run
            artifact.pages.clear()
            await session.flush()
            for number, story_page in enumerate(story.pages, start=1):
                artifact.pages.append(
                    ArtifactPage(
                        account_id=artifact.account_id,
                        page_number=number,
                        text=list(story_page.text),
                        image_prompt=story_page.image_prompt,
                    )
                )
            artifact.title = story.title
            artifact.description = story.description
            artifact.total_tokens = story.usage.total_tokens
            artifact.cost_usd = story.cost_usd
            artifact.ai_model = story.model
            artifact.status = ArtifactStatus.completed
            meta = dict(artifact.meta or {})
            meta.pop("error", None)
            meta.pop("failed_at", None)
            meta["generated_at"] = _now().isoformat()
            artifact.meta = meta
            await session.commit()
        except Exception as exc:
            await session.rollback()
            logger.warning("story_generation_failed", extra={"artifact_id": str(artifact_id), "error": str(exc)})
            await _mark_artifact_failed(ctx.session_factory, artifact_id, exc)
            raise

    logger.info(
        "story_generated",
        extra={"artifact_id": str(artifact_id), "pages": len(story.pages), "cost_usd": story.cost_usd},
    )
    images_job_id = None
    try:
        handle = await enqueuers.queue_story_images_generation(ctx.queue, artifact_id=artifact_id)
        images_job_id = str(handle.id)
    except Exception:
        logger.exception("story_images_enqueue_failed", extra={"artifact_id": str(artifact_id)})
    return {
        "artifactId": str(artifact_id),
        "pages": len(story.pages),
        "costUsd": story.cost_usd,
        "imagesJobId": images_job_id,
    }


async def generate_story_images(ctx: JobContext) -> dict[str, Any]:
    artifact_id = require_uuid(ctx.payload, "artifactId")
    style = payload_str(ctx.payload, "style") or DEFAULT_ILLUSTRATION_STYLE
    ai = ctx.services.ai
    if ai is None:
        raise RuntimeError("generate-story-images needs the AI service")

    async with ctx.session_factory() as session:
        artifact = await session.get(Artifact, artifact_id)
        if artifact is None:
            raise RecordNotFoundError("Artifact", artifact_id)
        prompt_cost = 0.0
        prompt_tokens = 0
        for page in artifact.pages:
            if (page.image_prompt or "").strip():
                continue
            text = resolve_page_text(page)
            if not text:
                continue
            generated = await ai.generate_image_prompt(text, style)
            page.image_prompt = generated.prompt
            prompt_cost += generated.cost_usd
            prompt_tokens += generated.usage.total_tokens
        if prompt_cost or prompt_tokens:
            artifact.cost_usd = round(float(artifact.cost_usd or 0.0) + prompt_cost, 6)
            artifact.total_tokens = int(artifact.total_tokens or 0) + prompt_tokens
        await session.commit()
        page_ids = [page.id for page in artifact.pages if (page.image_prompt or "").strip()]

    handles = await enqueuers.queue_batch_page_images(ctx.queue, page_ids)
    logger.info(
        "story_images_queued",
        extra={"artifact_id": str(artifact_id), "pages": len(handles), "prompt_cost_usd": round(prompt_cost, 6)},
    )
    return {"artifactId": str(artifact_id), "pagesQueued": len(handles), "promptCostUsd": round(prompt_cost, 6)}
