import argparse
import asyncio
import json
import uuid
from typing import Any, Dict

from storyforge.core.config import settings
from storyforge.core.logging_config import configure_logging
from storyforge.core.redis_client import close_redis, get_redis
from storyforge.db.base import Base
from storyforge.db.session import SessionLocal, engine
from storyforge.jobs.images import ACTOR_IMAGE_STAGES, resume_actor_image_pipeline
from storyforge.models.content import ImageStatus
from storyforge.models.media import MediaOwnerType
from storyforge.queues import registry
from storyforge.queues.client import QueueClient, ScheduledJobInfo
from storyforge.schedules.cleanup import MANUAL_JOB_TYPES, get_scheduled_cleanup_jobs, trigger_manual_cleanup
from storyforge.schedules.suggestions import get_scheduled_suggestion_jobs, trigger_manual_suggestions_for_all
from storyforge.schedules.topics import get_scheduled_topic_jobs, trigger_manual_topic_dispatch
from storyforge.services.media_lifecycle import commit_pending_media
from storyforge.workers import runner


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _parse_uuid(raw: str, *, label: str) -> uuid.UUID:
    try:
        return uuid.UUID((raw or "").strip())
    except ValueError:
        raise SystemExit(f"Invalid {label}: {raw!r}")


def _serialize_schedule(info: ScheduledJobInfo) -> Dict[str, Any]:
    return {
        "name": info.name,
        "cron": info.cron_pattern,
        "next_run_time": info.next_run_time.isoformat(),
        "key": info.key,
    }


def _client() -> QueueClient:
    return QueueClient(SessionLocal, get_redis())


async def init_db() -> None:
    import storyforge.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Schema created")


async def trigger_cleanup(job_type: str, batch_size: int | None) -> None:
    options = {"batchSize": batch_size} if batch_size else None
    try:
        handle = await trigger_manual_cleanup(_client(), job_type, options)
    finally:
        await close_redis()
    print(f"Queued {handle.job_name} as {handle.id}")


async def trigger_topic_dispatch() -> None:
    try:
        handle = await trigger_manual_topic_dispatch(_client())
    finally:
        await close_redis()
    print(f"Queued {handle.job_name} as {handle.id}")


async def trigger_suggestions() -> None:
    try:
        handles = await trigger_manual_suggestions_for_all(_client())
    finally:
        await close_redis()
    print(f"Queued {len(handles)} suggestion job(s)")


async def list_schedules() -> None:
    client = _client()
    try:
        cleanup = await get_scheduled_cleanup_jobs(client)
        topics = await get_scheduled_topic_jobs(client)
        suggestions = await get_scheduled_suggestion_jobs(client)
    finally:
        await close_redis()
    _print_json(
        {
            "cleanup": [_serialize_schedule(info) for info in cleanup],
            "topics": [_serialize_schedule(info) for info in topics],
            "suggestions": [_serialize_schedule(info) for info in suggestions],
        }
    )


async def queue_health() -> None:
    try:
        health = await _client().get_all_queue_health(registry.ALL_QUEUES)
    finally:
        await close_redis()
    _print_json([item.as_dict() for item in health])


async def resume_actor_image(actor_id: uuid.UUID, stage: str | None) -> None:
    start = ImageStatus(stage) if stage else None
    try:
        handle = await resume_actor_image_pipeline(_client(), SessionLocal, actor_id=actor_id, stage=start)
    finally:
        await close_redis()
    if handle is None:
        print(f"Actor {actor_id} has nothing left to process")
    else:
        print(f"Queued {handle.job_name} as {handle.id}")


async def commit_upload_session(session_id: str, owner_type: str, owner_id: uuid.UUID) -> None:
    async with SessionLocal() as session:
        committed = await commit_pending_media(
            session, upload_session_id=session_id, owner_type=MediaOwnerType(owner_type), owner_id=owner_id
        )
    print(f"Committed {committed} media row(s)")


def _add_schema_command(subparsers) -> None:
    subparsers.add_parser("init-db", help="Create the database schema")


def _add_trigger_commands(subparsers) -> None:
    cleanup = subparsers.add_parser("trigger-cleanup", help="Queue a manual cleanup job")
    cleanup.add_argument(
        "--type", dest="job_type", default="media", choices=sorted(MANUAL_JOB_TYPES), help="Cleanup job to run"
    )
    cleanup.add_argument("--batch-size", type=int, default=None, help="Override the media cleanup batch size")

    subparsers.add_parser("trigger-topic-dispatch", help="Queue a curated topic dispatch now")
    subparsers.add_parser("trigger-suggestions", help="Queue suggestions for every eligible connected account")


def _add_inspection_commands(subparsers) -> None:
    subparsers.add_parser("list-schedules", help="Show repeatable jobs and their next run time")
    subparsers.add_parser("queue-health", help="Show job counts per queue and status")


def _add_media_commands(subparsers) -> None:
    resume = subparsers.add_parser("resume-actor-image", help="Re-drive the actor image pipeline")
    resume.add_argument("--actor-id", required=True, help="Actor id")
    resume.add_argument(
        "--stage",
        default=None,
        choices=[stage.value for stage in ACTOR_IMAGE_STAGES],
        help="Stage to start from (default: derived from the stored progress)",
    )

    commit = subparsers.add_parser("commit-upload-session", help="Commit the pending media of an upload session")
    commit.add_argument("--session-id", required=True, help="Upload session id")
    commit.add_argument(
        "--owner-type", required=True, choices=[owner.value for owner in MediaOwnerType], help="Owner entity type"
    )
    commit.add_argument("--owner-id", required=True, help="Owner id")


def _add_worker_command(subparsers) -> None:
    worker = subparsers.add_parser("run-worker", help="Run queue workers in the foreground")
    worker.add_argument("queues", nargs="*", default=["all"], help="media, video, content, cleanup, ghost or all")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Storyforge worker operations")
    subparsers = parser.add_subparsers(dest="command")
    _add_schema_command(subparsers)
    _add_trigger_commands(subparsers)
    _add_inspection_commands(subparsers)
    _add_media_commands(subparsers)
    _add_worker_command(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_db())
        return True
    if args.command == "trigger-cleanup":
        asyncio.run(trigger_cleanup(args.job_type, args.batch_size))
        return True
    if args.command == "trigger-topic-dispatch":
        asyncio.run(trigger_topic_dispatch())
        return True
    if args.command == "trigger-suggestions":
        asyncio.run(trigger_suggestions())
        return True
    if args.command == "list-schedules":
        asyncio.run(list_schedules())
        return True
    if args.command == "queue-health":
        asyncio.run(queue_health())
        return True
    if args.command == "resume-actor-image":
        asyncio.run(resume_actor_image(_parse_uuid(args.actor_id, label="actor id"), args.stage))
        return True
    if args.command == "commit-upload-session":
        asyncio.run(
            commit_upload_session(args.session_id, args.owner_type, _parse_uuid(args.owner_id, label="owner id"))
        )
        return True
    if args.command == "run-worker":
        raise SystemExit(runner.main(args.queues))
    return False


def main():
    configure_logging(json_logs=bool(settings.log_json))
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
