from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from storyforge.core.config import settings
from storyforge.core.errors import TwitterAPIError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListTweet:
    id: str
    text: str
    author_username: str | None
    created_at: datetime | None
    like_count: int = 0
    retweet_count: int = 0
    reply_count: int = 0


def engagement_score(*, like_count: int, retweet_count: int, reply_count: int) -> float:
    return float(like_count) + float(retweet_count) * 2.0 + float(reply_count) * 1.5


def _parse_created_at(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_tweets(body: dict[str, Any]) -> list[ListTweet]:
    users = {
        str(user.get("id")): user.get("username")
        for user in ((body.get("includes") or {}).get("users") or [])
        if isinstance(user, dict)
    }
    tweets: list[ListTweet] = []
    for item in body.get("data") or []:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        metrics = item.get("public_metrics") or {}
        tweets.append(
            ListTweet(
                id=str(item["id"]),
                text=str(item.get("text") or ""),
                author_username=users.get(str(item.get("author_id"))),
                created_at=_parse_created_at(item.get("created_at")),
                like_count=int(metrics.get("like_count") or 0),
                retweet_count=int(metrics.get("retweet_count") or 0),
                reply_count=int(metrics.get("reply_count") or 0),
            )
        )
    return tweets


class TwitterClient:
    """Read-only client for the list timeline endpoint of the Twitter v2 API."""

    def __init__(self, *, bearer_token: str | None = None, base_url: str | None = None, timeout: float = 15.0) -> None:
        self.bearer_token = bearer_token if bearer_token is not None else settings.twitter_bearer_token
        self.base_url = (base_url or settings.twitter_api_base_url).rstrip("/")
        self.timeout = timeout

    async def fetch_list_tweets(self, list_id: str, *, max_results: int = 100) -> list[ListTweet]:
        if not self.bearer_token:
            raise TwitterAPIError("TWITTER_BEARER_TOKEN is not configured")
        params = {
            "max_results": max(1, min(int(max_results), 100)),
            "tweet.fields": "created_at,public_metrics,author_id",
            "expansions": "author_id",
            "user.fields": "username",
        }
        headers = {"Authorization": f"Bearer {self.bearer_token}", "Accept": "application/json"}
        timeout = httpx.Timeout(self.timeout, connect=5.0)
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=timeout, headers=headers) as client:
                resp = await client.get(f"/lists/{list_id}/tweets", params=params)
                if resp.status_code == 429:
                    raise TwitterAPIError(f"Twitter rate limit hit for list {list_id}")
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as exc:
            raise TwitterAPIError(f"Twitter list {list_id} fetch failed: {exc}") from exc
        return _parse_tweets(body if isinstance(body, dict) else {})
