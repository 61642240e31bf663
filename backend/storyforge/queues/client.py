"""Database-backed job queue with Redis wake-ups.

The ``background_jobs`` table is the source of truth for every job; Redis only
carries wake-up tokens so idle workers do not have to poll. Without Redis the
workers fall back to polling the table.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from croniter import croniter
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyforge.core.config import settings
from storyforge.core.errors import PermanentJobError, ScheduleSetupError
from storyforge.core.redis_client import await_if_needed, json_dumps, json_loads
from storyforge.models.jobs import BackgroundJob, BackgroundJobEvent, BackoffType, JobStatus, RepeatableJob

logger = logging.getLogger(__name__)

KEEP_ALL = -1
# jobs in these states hold their job id; settled jobs release it
LIVE_STATUSES = (JobStatus.waiting, JobStatus.active, JobStatus.failed)
WAKEUP_LIST_CAP = 1000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Backoff:
    type: BackoffType = BackoffType.exponential
    delay_ms: int = 1000


@dataclass(frozen=True)
class JobOptions:
    priority: int = 0
    delay_ms: int = 0
    job_id: str | None = None
    attempts: int | None = None
    backoff: Backoff | None = None
    remove_on_complete: bool | int | None = None
    remove_on_fail: bool | int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"priority": self.priority, "delay_ms": self.delay_ms}
        if self.attempts is not None:
            data["attempts"] = self.attempts
        if self.backoff is not None:
            data["backoff"] = {"type": self.backoff.type.value, "delay_ms": self.backoff.delay_ms}
        if self.remove_on_complete is not None:
            data["remove_on_complete"] = self.remove_on_complete
        if self.remove_on_fail is not None:
            data["remove_on_fail"] = self.remove_on_fail
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None, *, job_id: str | None = None) -> "JobOptions":
        data = dict(raw or {})
        backoff_raw = data.get("backoff")
        backoff = None
        if isinstance(backoff_raw, dict):
            backoff = Backoff(
                type=BackoffType(str(backoff_raw.get("type") or BackoffType.exponential.value)),
                delay_ms=int(backoff_raw.get("delay_ms") or 0),
            )
        return cls(
            priority=int(data.get("priority") or 0),
            delay_ms=int(data.get("delay_ms") or 0),
            job_id=job_id,
            attempts=data.get("attempts"),
            backoff=backoff,
            remove_on_complete=data.get("remove_on_complete"),
            remove_on_fail=data.get("remove_on_fail"),
        )


@dataclass(frozen=True)
class JobHandle:
    id: UUID
    queue_name: str
    job_name: str
    delay_ms: int = 0
    created: bool = True


@dataclass(frozen=True)
class ScheduledJobInfo:
    name: str
    cron_pattern: str
    next_run_time: datetime
    key: str


@dataclass
class QueueHealth:
    queue_name: str
    counts: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"queue": self.queue_name, **self.counts}


def compute_backoff_ms(backoff_type: BackoffType, delay_ms: int, attempt: int) -> int:
    """Delay before retrying after ``attempt`` failed runs (1-based)."""
    base = max(0, int(delay_ms))
    if backoff_type == BackoffType.fixed:
        return base
    return base * (2 ** (max(1, int(attempt)) - 1))


def next_cron_time(cron_pattern: str, base: datetime) -> datetime:
    try:
        return _as_utc(croniter(cron_pattern, _as_utc(base)).get_next(datetime))
    except (ValueError, KeyError) as exc:
        raise ScheduleSetupError(f"Invalid cron pattern {cron_pattern!r}: {exc}") from exc


def repeatable_key(queue_name: str, job_id: str) -> str:
    return f"{queue_name}:{job_id}"


def _retention(value: bool | int | None, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        return 0 if value else KEEP_ALL
    return max(0, int(value))


def _default_backoff() -> Backoff:
    raw_type = str(getattr(settings, "queue_default_backoff_type", "exponential") or "exponential")
    delay = int(getattr(settings, "queue_default_backoff_delay_ms", 1000) or 1000)
    return Backoff(type=BackoffType(raw_type), delay_ms=delay)


def _normalize_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    return json_loads(json_dumps(payload or {}))


class QueueClient:
    """Single entry point for enqueueing, claiming and settling jobs.

    Built once per process and handed to every enqueuer and worker, so all of
    them share one session factory and one Redis connection pool.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis=None,
        *,
        wakeup_prefix: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.wakeup_prefix = wakeup_prefix or str(
            getattr(settings, "queue_wakeup_prefix", "queues:wakeup") or "queues:wakeup"
        )

    def wakeup_key(self, queue_name: str) -> str:
        return f"{self.wakeup_prefix}:{queue_name}"

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any] | None = None,
        options: JobOptions | None = None,
    ) -> JobHandle:
        opts = options or JobOptions()
        now = _now()
        delay_ms = max(0, int(opts.delay_ms or 0))
        backoff = opts.backoff or _default_backoff()
        attempts = max(1, int(opts.attempts or getattr(settings, "queue_default_attempts", 10) or 10))
        default_remove = 0 if bool(getattr(settings, "queue_default_remove_on_complete", True)) else KEEP_ALL
        dedupe_key = (opts.job_id or "").strip() or None

        async with self.session_factory() as session:
            if dedupe_key is not None:
                existing = await self._find_by_dedupe_key(session, queue_name, dedupe_key)
                if existing is not None:
                    logger.info(
                        "queue_job_deduplicated",
                        extra={"queue_name": queue_name, "job_name": job_name, "dedupe_key": dedupe_key},
                    )
                    return JobHandle(id=existing.id, queue_name=queue_name, job_name=existing.job_name, created=False)
            job = BackgroundJob(
                queue_name=queue_name,
                job_name=job_name,
                payload=_normalize_payload(payload),
                status=JobStatus.waiting,
                priority=int(opts.priority or 0),
                available_at=now + timedelta(milliseconds=delay_ms),
                dedupe_key=dedupe_key,
                attempt=0,
                max_attempts=attempts,
                backoff_type=backoff.type,
                backoff_delay_ms=int(backoff.delay_ms),
                remove_on_complete=_retention(opts.remove_on_complete, default_remove),
                remove_on_fail=_retention(opts.remove_on_fail, KEEP_ALL),
                progress=0,
            )
            session.add(job)
            try:
                await session.flush()
            except IntegrityError:
                # another producer inserted the same job id first
                await session.rollback()
                existing = await self._find_by_dedupe_key(session, queue_name, dedupe_key or "")
                if existing is None:
                    raise
                return JobHandle(id=existing.id, queue_name=queue_name, job_name=existing.job_name, created=False)
            self._record_event(session, job=job, action="queued", meta={"delay_ms": delay_ms, "priority": job.priority})
            await session.commit()
            job_id = job.id

        await self._notify(queue_name, str(job_id))
        logger.info(
            "queue_job_enqueued",
            extra={"queue_name": queue_name, "job_name": job_name, "job_id": str(job_id), "delay_ms": delay_ms},
        )
        return JobHandle(id=job_id, queue_name=queue_name, job_name=job_name, delay_ms=delay_ms)

    async def enqueue_bulk(
        self,
        queue_name: str,
        jobs: Iterable[tuple[str, dict[str, Any] | None, JobOptions | None]],
    ) -> list[JobHandle]:
        handles: list[JobHandle] = []
        for job_name, payload, options in jobs:
            handles.append(await self.enqueue(queue_name, job_name, payload, options))
        return handles

    async def claim_next(self, queue_name: str, *, worker_id: str) -> BackgroundJob | None:
        """Claim the most urgent ready job of a queue, or return None.

        Ready means waiting and past its delay; among ready jobs the lowest
        priority number wins. The claim is a guarded UPDATE, so two workers
        selecting the same row cannot both run it.
        """
        async with self.session_factory() as session:
            for _ in range(5):
                now = _now()
                candidate = await session.scalar(
                    select(BackgroundJob.id)
                    .where(
                        BackgroundJob.queue_name == queue_name,
                        BackgroundJob.status == JobStatus.waiting,
                        BackgroundJob.available_at <= now,
                    )
                    .order_by(
                        BackgroundJob.priority.asc(),
                        BackgroundJob.available_at.asc(),
                        BackgroundJob.created_at.asc(),
                    )
                    .limit(1)
                )
                if candidate is None:
                    return None
                claimed = await session.execute(
                    update(BackgroundJob)
                    .where(BackgroundJob.id == candidate, BackgroundJob.status == JobStatus.waiting)
                    .values(
                        status=JobStatus.active,
                        attempt=BackgroundJob.attempt + 1,
                        started_at=now,
                        completed_at=None,
                        next_retry_at=None,
                        worker_id=worker_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if int(claimed.rowcount or 0) != 1:
                    await session.rollback()
                    continue
                job = await session.get(BackgroundJob, candidate, populate_existing=True)
                if job is None:  # pragma: no cover
                    await session.rollback()
                    continue
                self._record_event(session, job=job, action="started", meta={"attempt": int(job.attempt)})
                await session.commit()
                return job
        return None

    async def complete(self, job_id: UUID, result: dict[str, Any] | None = None) -> None:
        async with self.session_factory() as session:
            job = await session.get(BackgroundJob, job_id)
            if job is None:
                return
            now = _now()
            job.status = JobStatus.completed
            job.progress = 100
            job.dedupe_key = None
            job.completed_at = now
            job.result = _normalize_payload(result) if isinstance(result, dict) else None
            job.error_code = None
            job.error_message = None
            job.next_retry_at = None
            self._record_event(session, job=job, action="completed", meta={"attempt": int(job.attempt)})
            await session.flush()
            await self._apply_retention(session, job=job, keep=int(job.remove_on_complete), status=JobStatus.completed)
            await session.commit()

    async def fail(self, job_id: UUID, exc: BaseException) -> JobStatus | None:
        """Record a handler failure and decide between retry and dead-letter."""
        async with self.session_factory() as session:
            job = await session.get(BackgroundJob, job_id)
            if job is None:
                return None
            now = _now()
            message = str(exc) or type(exc).__name__
            job.last_error_at = now
            job.completed_at = now
            job.error_code = str(getattr(exc, "code", "") or "processing_failed")
            job.error_message = message
            permanent = isinstance(exc, PermanentJobError)
            if permanent or int(job.attempt) >= int(job.max_attempts):
                job.status = JobStatus.dead
                job.dead_lettered_at = now
                job.next_retry_at = None
                job.dedupe_key = None
                self._record_event(
                    session,
                    job=job,
                    action="dead_lettered",
                    note=message,
                    meta={"attempt": int(job.attempt), "max_attempts": int(job.max_attempts), "permanent": permanent},
                )
                await session.flush()
                await self._apply_retention(session, job=job, keep=int(job.remove_on_fail), status=JobStatus.dead)
            else:
                delay_ms = compute_backoff_ms(job.backoff_type, job.backoff_delay_ms, int(job.attempt))
                job.status = JobStatus.failed
                job.next_retry_at = now + timedelta(milliseconds=delay_ms)
                self._record_event(
                    session,
                    job=job,
                    action="retry_scheduled",
                    note=message,
                    meta={"attempt": int(job.attempt), "max_attempts": int(job.max_attempts), "retry_in_ms": delay_ms},
                )
            status = job.status
            await session.commit()
            return status

    async def enqueue_due_retries(self, *, limit: int = 50) -> list[UUID]:
        now = _now()
        async with self.session_factory() as session:
            rows = (
                (
                    await session.execute(
                        select(BackgroundJob)
                        .where(
                            BackgroundJob.status == JobStatus.failed,
                            BackgroundJob.next_retry_at.is_not(None),
                            BackgroundJob.next_retry_at <= now,
                            BackgroundJob.attempt < BackgroundJob.max_attempts,
                        )
                        .order_by(BackgroundJob.next_retry_at.asc(), BackgroundJob.created_at.asc())
                        .limit(max(1, min(int(limit or 50), 500)))
                    )
                )
                .scalars()
                .all()
            )
            queued: list[tuple[UUID, str]] = []
            for job in rows:
                job.status = JobStatus.waiting
                job.available_at = now
                job.progress = 0
                job.next_retry_at = None
                self._record_event(
                    session,
                    job=job,
                    action="retry_enqueued",
                    meta={"attempt": int(job.attempt), "max_attempts": int(job.max_attempts)},
                )
                queued.append((job.id, job.queue_name))
            await session.commit()
        for job_id, queue_name in queued:
            await self._notify(queue_name, str(job_id))
        return [job_id for job_id, _ in queued]

    async def recover_stalled_jobs(self, *, stalled_before: datetime, limit: int = 50) -> list[UUID]:
        """Return active jobs whose worker vanished to the waiting state.

        A job counts as stalled when it has been active since before
        ``stalled_before``. Jobs with no attempts left are dead-lettered.
        """
        now = _now()
        async with self.session_factory() as session:
            rows = (
                (
                    await session.execute(
                        select(BackgroundJob)
                        .where(
                            BackgroundJob.status == JobStatus.active,
                            BackgroundJob.started_at.is_not(None),
                            BackgroundJob.started_at < stalled_before,
                        )
                        .order_by(BackgroundJob.started_at.asc())
                        .limit(max(1, min(int(limit or 50), 500)))
                    )
                )
                .scalars()
                .all()
            )
            recovered: list[tuple[UUID, str]] = []
            for job in rows:
                meta = {"attempt": int(job.attempt), "worker_id": job.worker_id}
                if int(job.attempt) >= int(job.max_attempts):
                    job.status = JobStatus.dead
                    job.dead_lettered_at = now
                    job.completed_at = now
                    job.dedupe_key = None
                    job.error_code = "stalled"
                    job.error_message = "job stalled with no attempts left"
                    self._record_event(session, job=job, action="dead_lettered", note="stalled", meta=meta)
                    continue
                job.status = JobStatus.waiting
                job.available_at = now
                job.worker_id = None
                self._record_event(session, job=job, action="stalled", meta=meta)
                recovered.append((job.id, job.queue_name))
            await session.commit()
        for job_id, queue_name in recovered:
            logger.warning("queue_job_stalled", extra={"queue_name": queue_name, "job_id": str(job_id)})
            await self._notify(queue_name, str(job_id))
        return [job_id for job_id, _ in recovered]

    async def update_progress(self, job_id: UUID, progress: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == job_id)
                .values(progress=max(0, min(100, int(progress))))
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def get_job(self, job_id: UUID) -> BackgroundJob | None:
        async with self.session_factory() as session:
            return await session.get(BackgroundJob, job_id)

    async def get_queue_health(self, queue_name: str) -> QueueHealth:
        now = _now()
        async with self.session_factory() as session:
            rows = await session.execute(
                select(BackgroundJob.status, func.count())
                .where(BackgroundJob.queue_name == queue_name)
                .group_by(BackgroundJob.status)
            )
            counts = {status.value: 0 for status in JobStatus}
            for status, count in rows.all():
                counts[JobStatus(status).value] = int(count)
            delayed = await session.scalar(
                select(func.count())
                .select_from(BackgroundJob)
                .where(
                    BackgroundJob.queue_name == queue_name,
                    BackgroundJob.status == JobStatus.waiting,
                    BackgroundJob.available_at > now,
                )
            )
        counts["delayed"] = int(delayed or 0)
        return QueueHealth(queue_name=queue_name, counts=counts)

    async def get_all_queue_health(self, queue_names: Iterable[str]) -> list[QueueHealth]:
        return [await self.get_queue_health(name) for name in queue_names]

    async def schedule_repeating(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any] | None,
        cron_pattern: str,
        job_id: str,
        options: JobOptions | None = None,
        *,
        now: datetime | None = None,
    ) -> ScheduledJobInfo:
        """Register a cron schedule; the same job id on a queue replaces the previous one."""
        if not (job_id or "").strip():
            raise ScheduleSetupError("Repeatable jobs need a job id")
        next_run = next_cron_time(cron_pattern, now or _now())
        key = repeatable_key(queue_name, job_id)
        async with self.session_factory() as session:
            for attempt in range(2):
                row = await session.scalar(select(RepeatableJob).where(RepeatableJob.key == key))
                if row is None:
                    row = RepeatableJob(key=key, queue_name=queue_name, job_id=job_id)
                    session.add(row)
                row.job_name = job_name
                row.cron_pattern = cron_pattern
                row.payload = _normalize_payload(payload)
                row.options = (options or JobOptions()).to_dict()
                row.next_run_at = next_run
                try:
                    await session.commit()
                    break
                except IntegrityError:
                    # another process registered the same key first; update its row instead
                    await session.rollback()
                    if attempt:
                        raise
        logger.info(
            "queue_repeatable_scheduled",
            extra={"queue_name": queue_name, "job_name": job_name, "cron_pattern": cron_pattern, "key": key},
        )
        return ScheduledJobInfo(name=job_name, cron_pattern=cron_pattern, next_run_time=next_run, key=key)

    async def clear_repeatables(self, queue_name: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(RepeatableJob)
                .where(RepeatableJob.queue_name == queue_name)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("queue_repeatables_cleared", extra={"queue_name": queue_name, "count": removed})
        return removed

    async def remove_repeatable(self, key: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(RepeatableJob).where(RepeatableJob.key == key).execution_options(synchronize_session=False)
            )
            await session.commit()
        return bool(result.rowcount)

    async def get_repeatables(self, queue_name: str, *, job_name: str | None = None) -> list[ScheduledJobInfo]:
        async with self.session_factory() as session:
            stmt = select(RepeatableJob).where(RepeatableJob.queue_name == queue_name)
            if job_name:
                stmt = stmt.where(RepeatableJob.job_name == job_name)
            rows = (await session.execute(stmt.order_by(RepeatableJob.next_run_at.asc()))).scalars().all()
        return [
            ScheduledJobInfo(
                name=row.job_name,
                cron_pattern=row.cron_pattern,
                next_run_time=_as_utc(row.next_run_at),
                key=row.key,
            )
            for row in rows
        ]

    async def promote_due_repeatables(self, *, now: datetime | None = None, limit: int = 100) -> int:
        """Enqueue one run for every schedule whose next run time has passed.

        ``next_run_at`` is advanced with a guarded UPDATE first; only the caller
        that moved it enqueues, and the run is deduped by schedule key and run
        time in case the enqueue itself is retried.
        """
        current = now or _now()
        async with self.session_factory() as session:
            due = (
                (
                    await session.execute(
                        select(RepeatableJob)
                        .where(RepeatableJob.next_run_at <= current)
                        .order_by(RepeatableJob.next_run_at.asc())
                        .limit(max(1, int(limit)))
                    )
                )
                .scalars()
                .all()
            )
            schedules = [
                (row.id, row.key, row.queue_name, row.job_name, row.cron_pattern, row.next_run_at, row.payload, row.options)
                for row in due
            ]
            runs: list[tuple[str, str, str, dict[str, Any], dict[str, Any] | None, datetime]] = []
            for row_id, key, queue_name, job_name, cron_pattern, scheduled_for, payload, options in schedules:
                try:
                    following = next_cron_time(cron_pattern, current)
                except ScheduleSetupError:
                    logger.exception("queue_repeatable_invalid", extra={"key": key})
                    continue
                advanced = await session.execute(
                    update(RepeatableJob)
                    .where(RepeatableJob.id == row_id, RepeatableJob.next_run_at == scheduled_for)
                    .values(next_run_at=following, last_run_at=current)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if int(advanced.rowcount or 0) == 1:
                    runs.append((key, queue_name, job_name, dict(payload or {}), options, _as_utc(scheduled_for)))

        promoted = 0
        for key, queue_name, job_name, payload, options, scheduled_for in runs:
            run_ms = int(scheduled_for.timestamp() * 1000)
            job_options = JobOptions.from_dict(options, job_id=f"repeat:{key}:{run_ms}")
            await self.enqueue(queue_name, job_name, payload, job_options)
            promoted += 1
        return promoted

    async def wait_for_wakeup(self, queue_name: str, *, timeout: float) -> bool:
        """Block on the queue's wake-up list; False when Redis is not configured."""
        if self.redis is None:
            return False
        result = await await_if_needed(self.redis.blpop([self.wakeup_key(queue_name)], timeout=max(1, int(timeout))))
        return bool(result)

    async def _notify(self, queue_name: str, token: str) -> None:
        if self.redis is None:
            return
        key = self.wakeup_key(queue_name)
        try:
            await await_if_needed(self.redis.rpush(key, token))
            await await_if_needed(self.redis.ltrim(key, -WAKEUP_LIST_CAP, -1))
        except Exception as exc:
            # workers still find the job on their next poll
            logger.warning("queue_wakeup_failed", extra={"queue_name": queue_name, "error": str(exc)})

    async def _find_by_dedupe_key(self, session: AsyncSession, queue_name: str, dedupe_key: str) -> BackgroundJob | None:
        return await session.scalar(
            select(BackgroundJob).where(
                BackgroundJob.queue_name == queue_name,
                BackgroundJob.dedupe_key == dedupe_key,
                BackgroundJob.status.in_(LIVE_STATUSES),
            )
        )

    async def _apply_retention(self, session: AsyncSession, *, job: BackgroundJob, keep: int, status: JobStatus) -> None:
        if keep == KEEP_ALL:
            return
        if keep == 0:
            stale_ids = [job.id]
        else:
            stale_ids = list(
                (
                    await session.execute(
                        select(BackgroundJob.id)
                        .where(BackgroundJob.queue_name == job.queue_name, BackgroundJob.status == status)
                        .order_by(BackgroundJob.completed_at.desc(), BackgroundJob.created_at.desc())
                        .offset(keep)
                    )
                )
                .scalars()
                .all()
            )
        if not stale_ids:
            return
        await session.execute(
            delete(BackgroundJobEvent)
            .where(BackgroundJobEvent.job_id.in_(stale_ids))
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(BackgroundJob).where(BackgroundJob.id.in_(stale_ids)).execution_options(synchronize_session=False)
        )

    @staticmethod
    def _record_event(
        session: AsyncSession,
        *,
        job: BackgroundJob,
        action: str,
        note: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        session.add(
            BackgroundJobEvent(
                job_id=job.id,
                action=(action or "").strip()[:80] or "event",
                note=(note or "").strip() or None,
                meta=meta or None,
            )
        )
