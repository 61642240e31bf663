from __future__ import annotations

import logging

from storyforge.core.config import settings

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _looks_like_localhost(url: str | None) -> bool:
    value = (url or "").strip().lower()
    if not value:
        return False
    return "localhost" in value or "127.0.0.1" in value


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_core_production_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=not (settings.redis_url or "").strip(),
        message="REDIS_URL must be configured in production (workers would fall back to DB polling).",
    )
    _append_if(
        problems,
        condition=_looks_like_localhost(settings.database_url),
        message="DATABASE_URL must not point at localhost in production.",
    )
    _append_if(
        problems,
        condition=not (settings.sentry_dsn or "").strip(),
        message="SENTRY_DSN must be configured in production.",
    )


def _validate_collaborator_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=not (settings.openai_api_key or "").strip(),
        message="OPENAI_API_KEY must be set in production.",
    )
    signing_key = (settings.storage_signing_key or "").strip()
    _append_if(
        problems,
        condition=signing_key in {"", "dev-signing-key"} or len(signing_key) < 32,
        message="STORAGE_SIGNING_KEY must be set to a strong random value (not the dev default).",
    )
    _append_if(
        problems,
        condition=_looks_like_localhost(settings.storage_public_base_url),
        message="STORAGE_PUBLIC_BASE_URL must be set to the public media origin in production.",
    )


def validate_production_settings() -> None:
    """
    Fail fast on insecure defaults when running in production.

    Workers that boot with development credentials would burn retries against
    collaborators that reject every call.
    """
    if not _is_production():
        return

    problems: list[str] = []
    _validate_core_production_settings(problems)
    _validate_collaborator_settings(problems)

    if problems:
        raise RuntimeError("Production configuration checks failed:\n- " + "\n- ".join(problems))
