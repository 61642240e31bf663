from __future__ import annotations

import logging
from typing import Any

from storyforge.core.errors import PermanentJobError, RecordNotFoundError
from storyforge.jobs.context import JobContext, payload_uuid, require_uuid
from storyforge.jobs.text_resolver import combine_pages
from storyforge.models.content import Artifact
from storyforge.models.media import Media, MediaOwnerType, MediaStatus, MediaType
from storyforge.services import media_lifecycle
from storyforge.services.storage import VARIANT_PUBLIC
from storyforge.services.video_render import RenderRequest

logger = logging.getLogger(__name__)

RENDER_URL_TTL_SECONDS = 3600


async def generate_artifact_video(ctx: JobContext) -> dict[str, Any]:
    artifact_id = require_uuid(ctx.payload, "artifactId")
    audio_media_id = payload_uuid(ctx.payload, "audioMediaId")
    storage = ctx.services.storage
    renderer = ctx.services.video_renderer
    if storage is None or renderer is None:
        raise RuntimeError("generate-artifact-video needs the storage and video render services")

    async with ctx.session_factory() as session:
        artifact = await session.get(Artifact, artifact_id)
        if artifact is None:
            raise RecordNotFoundError("Artifact", artifact_id)

        audio: Media | None = None
        if audio_media_id is not None:
            audio = await session.get(Media, audio_media_id)
        if audio is None:
            candidates = await media_lifecycle.find_committed_by_owner(
                session, owner_type=MediaOwnerType.artifact, owner_id=artifact.id, media_type=MediaType.audio
            )
            audio = candidates[0] if candidates else None
        if audio is None or audio.status != MediaStatus.committed or not audio.audio_key:
            raise PermanentJobError(f"Artifact {artifact_id} has no committed story audio")

        try:
            request = RenderRequest(
                artifact_id=str(artifact.id),
                account_id=str(artifact.account_id),
                audio_url=storage.get_signed_url(audio.audio_key, VARIANT_PUBLIC, RENDER_URL_TTL_SECONDS),
                text=combine_pages(artifact.pages),
                title=artifact.title,
                image_urls=[
                    storage.get_signed_url(page.image_key, VARIANT_PUBLIC, RENDER_URL_TTL_SECONDS)
                    for page in artifact.pages
                    if page.image_key
                ],
            )
            rendered = await renderer.render(request)
        except Exception as exc:
            meta = dict(artifact.meta or {})
            meta["video_generation_error"] = str(exc) or type(exc).__name__
            artifact.meta = meta
            await session.commit()
            logger.warning("artifact_video_failed", extra={"artifact_id": str(artifact_id), "error": str(exc)})
            raise

        video = await media_lifecycle.create_committed_media(
            session,
            account_id=artifact.account_id,
            owner_type=MediaOwnerType.artifact,
            owner_id=artifact.id,
            media_type=MediaType.video,
            key=rendered.video_key,
            metadata={
                "filename": rendered.filename,
                "size_bytes": rendered.size_bytes,
                "duration_seconds": rendered.duration_seconds,
                "generation_seconds": rendered.generation_seconds,
                "audio_media_id": str(audio.id),
            },
        )
        meta = dict(artifact.meta or {})
        meta.pop("video_generation_error", None)
        meta["has_video"] = True
        meta["video_media_id"] = str(video.id)
        artifact.meta = meta
        await session.commit()
        video_id = video.id

    logger.info(
        "artifact_video_generated",
        extra={"artifact_id": str(artifact_id), "media_id": str(video_id), "seconds": rendered.generation_seconds},
    )
    return {"artifactId": str(artifact_id), "mediaId": str(video_id), "videoKey": rendered.video_key}
