"""Where a page's narration text lives.

Pages written by different generations of the editor store their text in
different places. ``resolve_page_text`` checks them in a fixed order and
returns the first one that yields text:

1. ``layout_data["text"]`` as a list of segments (current editor)
2. ``text`` as a list of sentences
3. ``text`` as a plain string (oldest rows)

Segments are joined with a single space.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

PAGE_SEPARATOR = " ... "


def _join_segments(segments: list[Any]) -> str:
    parts = [str(segment).strip() for segment in segments if segment is not None and str(segment).strip()]
    return " ".join(parts)


def _from_layout(layout_data: Any) -> str:
    if not isinstance(layout_data, dict):
        return ""
    segments = layout_data.get("text")
    if isinstance(segments, list):
        return _join_segments(segments)
    return ""


def _from_text_field(text: Any) -> str:
    if isinstance(text, list):
        return _join_segments(text)
    if isinstance(text, str):
        return text.strip()
    return ""


def resolve_page_text(page: Any) -> str:
    """Narration text of ``page`` (an ``ArtifactPage`` or anything with the same attributes)."""
    resolved = _from_layout(getattr(page, "layout_data", None))
    if resolved:
        return resolved
    return _from_text_field(getattr(page, "text", None))


def combine_pages(pages: Iterable[Any]) -> str:
    """Whole-story narration: every page with text, in order, joined by ``PAGE_SEPARATOR``."""
    ordered = sorted(pages, key=lambda page: int(getattr(page, "page_number", 0) or 0))
    texts = [resolve_page_text(page) for page in ordered]
    return PAGE_SEPARATOR.join(text for text in texts if text)
