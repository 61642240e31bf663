from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from urllib.parse import quote, urlencode

import httpx

from storyforge.core.config import settings
from storyforge.core.errors import StorageError

logger = logging.getLogger(__name__)

VARIANT_THUMBNAIL = "thumbnail"
VARIANT_PUBLIC = "public"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StorageService:
    """Signed read URLs plus writes and deletes against the media store's HTTP API."""

    def __init__(
        self,
        *,
        public_base_url: str | None = None,
        signing_key: str | None = None,
        api_url: str | None = None,
        api_token: str | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.public_base_url = (public_base_url or settings.storage_public_base_url).rstrip("/")
        self.signing_key = str(signing_key or settings.storage_signing_key or "")
        self.api_url = (api_url if api_url is not None else (settings.storage_api_url or "")).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.storage_api_token
        self.timeout = timeout

    def _sign(self, key: str, *, variant: str, exp: int) -> str:
        base = f"{key}:{(variant or '').strip().lower()}:{exp}"
        return hmac.new(self.signing_key.encode("utf-8"), base.encode("utf-8"), hashlib.sha256).hexdigest()

    def get_signed_url(self, key: str, variant: str = VARIANT_PUBLIC, ttl_seconds: int | None = None) -> str:
        if not (key or "").strip():
            raise StorageError("Cannot sign an empty storage key")
        ttl = int(ttl_seconds or int(getattr(settings, "storage_signed_url_ttl_seconds", 600) or 600))
        ttl = max(30, ttl)
        exp = int(_now().timestamp()) + ttl
        query = urlencode({"variant": variant, "exp": exp, "sig": self._sign(key, variant=variant, exp=exp)})
        return f"{self.public_base_url}/{quote(key)}?{query}"

    def verify_signature(self, key: str, *, variant: str, exp: int, sig: str) -> bool:
        try:
            exp_ts = int(exp)
        except (TypeError, ValueError):
            return False
        if exp_ts < int(_now().timestamp()):
            return False
        return hmac.compare_digest(self._sign(key, variant=variant, exp=exp_ts), str(sig or ""))

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _require_api(self) -> str:
        if not self.api_url:
            raise StorageError("Storage API is not configured (STORAGE_API_URL)")
        return self.api_url

    async def put_object(self, key: str, data: bytes, *, content_type: str) -> str:
        base_url = self._require_api()
        try:
            async with httpx.AsyncClient(base_url=base_url, timeout=self.timeout, headers=self._headers()) as client:
                resp = await client.put(f"/objects/{quote(key)}", content=data, headers={"Content-Type": content_type})
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise StorageError(f"Upload of {key} failed: {exc}") from exc
        return key

    async def delete_object(self, key: str) -> bool:
        base_url = self._require_api()
        try:
            async with httpx.AsyncClient(base_url=base_url, timeout=self.timeout, headers=self._headers()) as client:
                resp = await client.delete(f"/objects/{quote(key)}")
                if resp.status_code == 404:
                    return False
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise StorageError(f"Delete of {key} failed: {exc}") from exc
        return True
