from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Protocol

import httpx

from storyforge.core.config import settings
from storyforge.core.errors import VideoRenderError


@dataclass(frozen=True)
class RenderRequest:
    artifact_id: str
    account_id: str
    audio_url: str
    text: str
    title: str | None = None
    image_urls: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RenderedVideo:
    filename: str
    video_key: str
    size_bytes: int
    duration_seconds: float | None
    generation_seconds: float


class VideoRenderer(Protocol):
    async def render(self, request: RenderRequest) -> RenderedVideo: ...


class HttpVideoRenderer:
    """Hands composition to the render service and waits for the finished file key."""

    def __init__(self, *, base_url: str | None = None, timeout: float | None = None) -> None:
        self.base_url = (base_url if base_url is not None else (settings.video_render_url or "")).rstrip("/")
        self.timeout = float(timeout or settings.video_render_timeout_seconds or 600.0)

    async def render(self, request: RenderRequest) -> RenderedVideo:
        if not self.base_url:
            raise VideoRenderError("Video render service is not configured (VIDEO_RENDER_URL)")
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(self.timeout, connect=10.0)) as client:
                resp = await client.post("/render", json=asdict(request))
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as exc:
            raise VideoRenderError(f"Render of artifact {request.artifact_id} failed: {exc}") from exc
        video_key = str(body.get("video_key") or "")
        if not video_key:
            raise VideoRenderError(f"Render service returned no video key for artifact {request.artifact_id}")
        return RenderedVideo(
            filename=str(body.get("filename") or video_key.rsplit("/", 1)[-1]),
            video_key=video_key,
            size_bytes=int(body.get("size_bytes") or 0),
            duration_seconds=body.get("duration_seconds"),
            generation_seconds=round(time.monotonic() - started, 3),
        )
