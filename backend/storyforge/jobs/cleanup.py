"""Reapers on the cleanup queue. Both are safe to run twice or concurrently."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from storyforge.core import metrics
from storyforge.core.config import settings
from storyforge.core.errors import StorageError
from storyforge.jobs.context import JobContext
from storyforge.models.topics import TrendingTopic
from storyforge.services import media_lifecycle

logger = logging.getLogger(__name__)

MAX_BATCHES_PER_RUN = 50


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _int_option(payload: dict[str, Any], key: str, default: int) -> int:
    try:
        return int(payload.get(key) if payload.get(key) is not None else default)
    except (TypeError, ValueError):
        return default


async def sweep_expired_trending_topics(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Delete trending topics past their expiry. Evergreen rows have no expiry and are never touched."""
    result = await session.execute(
        delete(TrendingTopic)
        .where(TrendingTopic.expires_at.is_not(None), TrendingTopic.expires_at <= (now or _now()))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)


async def cleanup_expired_media(ctx: JobContext) -> dict[str, Any]:
    default_batch = int(getattr(settings, "media_cleanup_batch_size", 100) or 100)
    batch_size = max(1, _int_option(ctx.payload, "batchSize", default_batch))
    purge_after_days = max(0, _int_option(ctx.payload, "purgeAfterDays", int(getattr(settings, "media_purge_after_days", 7))))
    now = _now()

    expired = 0
    batches = 0
    async with ctx.session_factory() as session:
        while batches < MAX_BATCHES_PER_RUN:
            moved = await media_lifecycle.expire_pending_media(session, now=now, limit=batch_size)
            batches += 1
            expired += moved
            if moved < batch_size:
                break
    metrics.record_media_expired(expired)
    logger.info(
        "media_expiry_sweep_completed",
        extra={"expired": expired, "batches": batches, "batch_size": batch_size, "manual": bool(ctx.payload.get("manual"))},
    )

    purged = 0
    blob_failures = 0
    if purge_after_days > 0:
        cutoff = now - timedelta(days=purge_after_days)
        storage = ctx.services.storage
        async with ctx.session_factory() as session:
            stale = await media_lifecycle.expired_media_older_than(session, cutoff=cutoff, limit=batch_size)
            removable: list[UUID] = []
            for media in stale:
                key = media.content_key
                if not key:
                    removable.append(media.id)
                    continue
                if storage is None:
                    # without storage the blob cannot be removed, so the row stays findable
                    continue
                try:
                    await storage.delete_object(key)
                except StorageError as exc:
                    blob_failures += 1
                    meta = dict(media.meta or {})
                    meta["blob_delete_error"] = str(exc)[:500]
                    meta["blob_delete_failed_at"] = now.isoformat()
                    meta["blob_delete_attempts"] = int(meta.get("blob_delete_attempts") or 0) + 1
                    media.meta = meta
                    logger.warning("expired_media_blob_delete_failed", extra={"media_id": str(media.id), "error": str(exc)})
                    continue
                removable.append(media.id)
            if blob_failures:
                # kept for the next sweep
                await session.commit()
            purged = await media_lifecycle.delete_expired_media(session, removable)
        if purged:
            logger.info("expired_media_purged", extra={"purged": purged, "blob_failures": blob_failures})

    return {"expired": expired, "batches": batches, "purged": purged, "blobFailures": blob_failures}


async def cleanup_trending_topics(ctx: JobContext) -> dict[str, Any]:
    async with ctx.session_factory() as session:
        removed = await sweep_expired_trending_topics(session)
    logger.info("trending_topic_sweep_completed", extra={"removed": removed})
    return {"removed": removed}
