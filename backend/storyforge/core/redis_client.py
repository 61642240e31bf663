from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar, cast

from redis.asyncio import Redis

from storyforge.core.config import settings

logger = logging.getLogger(__name__)
T = TypeVar("T")

_client: Redis | None = None


def get_redis() -> Redis | None:
    """Return a shared Redis client when REDIS_URL is configured."""
    global _client
    url = (getattr(settings, "redis_url", None) or "").strip()
    if not url:
        return None
    if _client is None:
        _client = Redis.from_url(url, encoding="utf-8", decode_responses=True)
    return _client


async def close_redis() -> None:
    global _client
    client = _client
    _client = None
    if client is None:
        return
    try:
        await client.aclose()
    except Exception:
        logger.exception("redis_close_failed")


async def await_if_needed(result: Awaitable[T] | T) -> T:
    if inspect.isawaitable(result):
        return await cast(Awaitable[T], result)
    return cast(T, result)


def json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def json_loads(raw: str | bytes | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)
