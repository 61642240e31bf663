from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Column, DateTime, Enum, Float, ForeignKey, Integer, JSON, String, Table, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storyforge.db.base import Base


class ImageStatus(str, enum.Enum):
    pending = "pending"
    analyzing = "analyzing"
    generating_avatar = "generating_avatar"
    completed = "completed"
    failed = "failed"


class PageImageStatus(str, enum.Enum):
    pending = "pending"
    generating = "generating"
    completed = "completed"
    failed = "failed"


class ArtifactStatus(str, enum.Enum):
    pending = "pending"
    generating = "generating"
    completed = "completed"
    failed = "failed"


artifact_actors = Table(
    "artifact_actors",
    Base.metadata,
    Column("artifact_id", UUID(as_uuid=True), ForeignKey("artifacts.id", ondelete="CASCADE"), primary_key=True),
    Column("actor_id", UUID(as_uuid=True), ForeignKey("actors.id", ondelete="CASCADE"), primary_key=True),
)


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    generation_time_utc: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class App(Base):
    __tablename__ = "apps"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(160), nullable=True)


class Input(Base):
    __tablename__ = "inputs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    app_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("apps.id"), nullable=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Actor(Base):
    __tablename__ = "actors"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    actor_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    image_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    image_status: Mapped[ImageStatus] = mapped_column(Enum(ImageStatus), nullable=False, default=ImageStatus.pending)
    character_continuity: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    analysis_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    analysis_cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    avatar_image_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    avatar_generation_cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    image_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Artifact(Base):
    __tablename__ = "artifacts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    app_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("apps.id"), nullable=True)
    input_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("inputs.id", ondelete="SET NULL"), nullable=True
    )
    artifact_type: Mapped[str] = mapped_column(String(40), nullable=False, default="story")
    status: Mapped[ArtifactStatus] = mapped_column(Enum(ArtifactStatus), nullable=False, default=ArtifactStatus.pending)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_model: Mapped[str | None] = mapped_column(String(80), nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    app: Mapped[App | None] = relationship("App", lazy="selectin")
    input: Mapped[Input | None] = relationship("Input", lazy="selectin")
    actors: Mapped[list[Actor]] = relationship("Actor", secondary=artifact_actors, lazy="selectin")
    pages: Mapped[list["ArtifactPage"]] = relationship(
        "ArtifactPage",
        back_populates="artifact",
        cascade="all, delete-orphan",
        order_by="ArtifactPage.page_number",
        lazy="selectin",
    )


class ArtifactPage(Base):
    __tablename__ = "artifact_pages"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    artifact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("artifacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    # legacy rows hold either a plain string or a list of sentences
    text: Mapped[Any] = mapped_column(JSON, nullable=True)
    layout_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    image_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    image_status: Mapped[PageImageStatus] = mapped_column(
        Enum(PageImageStatus), nullable=False, default=PageImageStatus.pending
    )
    image_generation_cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    image_ai_model: Mapped[str | None] = mapped_column(String(80), nullable=True)
    image_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    artifact: Mapped[Artifact] = relationship("Artifact", back_populates="pages")
