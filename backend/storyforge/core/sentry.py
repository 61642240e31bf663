from __future__ import annotations

import logging

from storyforge.core.config import settings


def init_sentry() -> None:
    if not settings.sentry_dsn:
        return

    import sentry_sdk
    from sentry_sdk.integrations import Integration
    from sentry_sdk.integrations.asyncio import AsyncioIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations: list[Integration] = [
        AsyncioIntegration(),
        SqlalchemyIntegration(),
    ]
    if settings.sentry_enable_logs:
        log_level_name = str(settings.sentry_log_level or "error").strip().upper()
        event_level = getattr(logging, log_level_name, logging.ERROR)
        integrations.append(
            LoggingIntegration(
                level=event_level,
                event_level=event_level,
            )
        )

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        profiles_sample_rate=settings.sentry_profiles_sample_rate,
        integrations=integrations,
        attach_stacktrace=True,
        send_default_pii=False,
    )


def capture_job_failure(exc: BaseException, *, queue_name: str, job_name: str, job_id: str) -> None:
    if not settings.sentry_dsn:
        return

    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        scope.set_tag("queue_name", queue_name)
        scope.set_tag("job_name", job_name)
        scope.set_extra("job_id", job_id)
        sentry_sdk.capture_exception(exc)
