"""Pending/committed/expired state machine for uploaded and generated media.

Every transition is a single conditional UPDATE. The affected-row count is the
only arbiter when two callers race for the same row; nothing here takes an
application-level lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storyforge.core.config import settings
from storyforge.models.media import Media, MediaOwnerType, MediaStatus, MediaType

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _pending_ttl() -> timedelta:
    return timedelta(hours=max(1, int(getattr(settings, "media_pending_ttl_hours", 24) or 24)))


@dataclass(frozen=True)
class MediaKeys:
    image_key: str | None = None
    audio_key: str | None = None
    video_key: str | None = None


def _keys_for(media_type: MediaType, key: str) -> MediaKeys:
    if media_type == MediaType.audio:
        return MediaKeys(audio_key=key)
    if media_type == MediaType.video:
        return MediaKeys(video_key=key)
    return MediaKeys(image_key=key)


async def create_pending_upload(
    session: AsyncSession,
    *,
    account_id: UUID,
    upload_session_id: str,
    media_type: MediaType,
    key: str,
    metadata: dict[str, Any] | None = None,
    ttl: timedelta | None = None,
    now: datetime | None = None,
) -> Media:
    """Record an upload that has not been bound to an owner yet.

    Until it is committed the row belongs to the uploading account and carries
    the session id and an expiry; the sweeper expires it once the TTL lapses.
    """
    session_id = (upload_session_id or "").strip()
    if not session_id:
        raise ValueError("upload_session_id is required for pending media")
    created_at = now or _now()
    keys = _keys_for(media_type, key)
    media = Media(
        account_id=account_id,
        owner_type=MediaOwnerType.account,
        owner_id=account_id,
        media_type=media_type,
        status=MediaStatus.pending,
        upload_session_id=session_id,
        expires_at=created_at + (ttl or _pending_ttl()),
        image_key=keys.image_key,
        audio_key=keys.audio_key,
        video_key=keys.video_key,
        meta=dict(metadata or {}),
    )
    session.add(media)
    await session.flush()
    return media


async def create_committed_media(
    session: AsyncSession,
    *,
    account_id: UUID,
    owner_type: MediaOwnerType,
    owner_id: UUID,
    media_type: MediaType,
    key: str,
    metadata: dict[str, Any] | None = None,
) -> Media:
    """Persist media produced by a pipeline whose owner is already known."""
    keys = _keys_for(media_type, key)
    media = Media(
        account_id=account_id,
        owner_type=owner_type,
        owner_id=owner_id,
        media_type=media_type,
        status=MediaStatus.committed,
        upload_session_id=None,
        expires_at=None,
        image_key=keys.image_key,
        audio_key=keys.audio_key,
        video_key=keys.video_key,
        meta=dict(metadata or {}),
    )
    session.add(media)
    await session.flush()
    return media


async def find_pending_by_session(
    session: AsyncSession, upload_session_id: str, *, now: datetime | None = None
) -> list[Media]:
    rows = await session.execute(
        select(Media)
        .where(
            Media.upload_session_id == upload_session_id,
            Media.status == MediaStatus.pending,
            Media.expires_at > (now or _now()),
        )
        .order_by(Media.created_at.asc())
    )
    return list(rows.scalars().all())


async def commit_pending_media(
    session: AsyncSession,
    *,
    upload_session_id: str,
    owner_type: MediaOwnerType,
    owner_id: UUID,
    now: datetime | None = None,
) -> int:
    """Bind every live pending row of an upload session to its owner.

    Returns the number of rows committed. A second commit of the same session,
    or a commit racing the sweeper, affects zero rows and is not an error.
    """
    result = await session.execute(
        update(Media)
        .where(
            Media.upload_session_id == upload_session_id,
            Media.status == MediaStatus.pending,
            Media.expires_at > (now or _now()),
        )
        .values(
            status=MediaStatus.committed,
            owner_type=owner_type,
            owner_id=owner_id,
            upload_session_id=None,
            expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    committed = int(result.rowcount or 0)
    if committed:
        logger.info(
            "media_session_committed",
            extra={"upload_session_id": upload_session_id, "owner_type": owner_type.value, "count": committed},
        )
    else:
        logger.info("media_session_commit_noop", extra={"upload_session_id": upload_session_id})
    return committed


async def expire_pending_media(session: AsyncSession, *, now: datetime | None = None, limit: int = 100) -> int:
    """Move one batch of lapsed pending rows to ``expired``.

    The UPDATE repeats the pending/expiry predicate so rows committed between
    the SELECT and the UPDATE are left alone.
    """
    cutoff = now or _now()
    ids = (
        (
            await session.execute(
                select(Media.id)
                .where(Media.status == MediaStatus.pending, Media.expires_at <= cutoff)
                .order_by(Media.expires_at.asc())
                .limit(max(1, int(limit)))
            )
        )
        .scalars()
        .all()
    )
    if not ids:
        return 0
    result = await session.execute(
        update(Media)
        .where(
            Media.id.in_(ids),
            Media.status == MediaStatus.pending,
            Media.expires_at <= cutoff,
        )
        .values(status=MediaStatus.expired, upload_session_id=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)


async def expired_media_older_than(session: AsyncSession, *, cutoff: datetime, limit: int = 100) -> list[Media]:
    rows = await session.execute(
        select(Media)
        .where(Media.status == MediaStatus.expired, Media.expires_at <= cutoff)
        # rows touched by a failed blob delete go to the back of the line
        .order_by(Media.updated_at.asc(), Media.expires_at.asc())
        .limit(max(1, int(limit)))
    )
    return list(rows.scalars().all())


async def delete_expired_media(session: AsyncSession, media_ids: list[UUID]) -> int:
    if not media_ids:
        return 0
    result = await session.execute(
        delete(Media)
        .where(and_(Media.id.in_(media_ids), Media.status == MediaStatus.expired))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)


async def find_committed_by_owner(
    session: AsyncSession,
    *,
    owner_type: MediaOwnerType,
    owner_id: UUID,
    media_type: MediaType | None = None,
) -> list[Media]:
    stmt = select(Media).where(
        Media.owner_type == owner_type,
        Media.owner_id == owner_id,
        Media.status == MediaStatus.committed,
    )
    if media_type is not None:
        stmt = stmt.where(Media.media_type == media_type)
    rows = await session.execute(stmt.order_by(Media.created_at.desc()))
    return list(rows.scalars().all())
