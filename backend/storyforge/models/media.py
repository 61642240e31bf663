from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum, Index, JSON, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from storyforge.db.base import Base


class MediaOwnerType(str, enum.Enum):
    input = "input"
    account = "account"
    artifact = "artifact"
    artifact_page = "artifact_page"


class MediaType(str, enum.Enum):
    image = "image"
    audio = "audio"
    video = "video"


class MediaStatus(str, enum.Enum):
    pending = "pending"
    committed = "committed"
    expired = "expired"


class Media(Base):
    __tablename__ = "media"
    __table_args__ = (
        # pending rows carry their upload session and TTL, nothing else may
        CheckConstraint(
            "(status = 'pending' AND upload_session_id IS NOT NULL AND expires_at IS NOT NULL)"
            " OR (status = 'committed' AND upload_session_id IS NULL AND expires_at IS NULL)"
            " OR (status = 'expired' AND upload_session_id IS NULL)",
            name="ck_media_status_session",
        ),
        Index("ix_media_owner", "owner_type", "owner_id"),
        Index("ix_media_status_expires_at", "status", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    owner_type: Mapped[MediaOwnerType] = mapped_column(Enum(MediaOwnerType), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    media_type: Mapped[MediaType] = mapped_column(Enum(MediaType), nullable=False)
    status: Mapped[MediaStatus] = mapped_column(Enum(MediaStatus), nullable=False, default=MediaStatus.pending)
    upload_session_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    image_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    audio_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    video_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def content_key(self) -> str | None:
        if self.media_type == MediaType.audio:
            return self.audio_key
        if self.media_type == MediaType.video:
            return self.video_key
        return self.image_key
