"""Error taxonomy shared by the queue, the dispatcher and the pipeline handlers.

Anything a handler raises that is not a ``PermanentJobError`` is treated as
transient and retried by the job's backoff policy.
"""

from __future__ import annotations


class JobError(Exception):
    """Base class for errors raised while processing a job."""

    code = "job_failed"


class PermanentJobError(JobError):
    """Retrying cannot help; the job is dead-lettered immediately."""

    code = "permanent_failure"


class RecordNotFoundError(PermanentJobError):
    code = "record_not_found"

    def __init__(self, entity: str, record_id: object) -> None:
        super().__init__(f"{entity} {record_id} not found")
        self.entity = entity
        self.record_id = record_id


class UnknownJobError(PermanentJobError):
    code = "unknown_job"

    def __init__(self, queue_name: str, job_name: str) -> None:
        super().__init__(f"Unknown job name {job_name!r} on queue {queue_name!r}")
        self.queue_name = queue_name
        self.job_name = job_name


class HandlerRegistrationError(ValueError):
    """Raised when a worker is attached with an invalid handler map."""


class ScheduleSetupError(RuntimeError):
    """Raised when a repeatable schedule cannot be registered."""


class AIServiceError(JobError):
    code = "ai_service_failed"


class StorageError(JobError):
    code = "storage_failed"


class TwitterAPIError(JobError):
    code = "twitter_api_failed"


class VideoRenderError(JobError):
    code = "video_render_failed"
