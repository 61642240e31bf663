"""Queue and job names, and which jobs each queue accepts."""

from __future__ import annotations

MEDIA_QUEUE = "media-processing"
VIDEO_QUEUE = "video-processing"
CONTENT_QUEUE = "content-generation"
CLEANUP_QUEUE = "cleanup"
GHOST_QUEUE = "ghost"

JOB_PROCESS_ACTOR_IMAGE = "process-actor-image"
JOB_GENERATE_PAGE_IMAGE = "generate-page-image"
JOB_PROCESS_IMAGE_UPLOAD = "process-image-upload"
JOB_GENERATE_PAGE_AUDIO = "generate-page-audio"
JOB_GENERATE_ARTIFACT_AUDIO = "generate-artifact-audio"
JOB_GENERATE_STORY_AUDIO = "generate-story-audio"

JOB_GENERATE_ARTIFACT_VIDEO = "generate-artifact-video"

JOB_GENERATE_STORY = "generate-story"
JOB_GENERATE_STORY_IMAGES = "generate-story-images"

JOB_CLEANUP_EXPIRED_MEDIA = "cleanup-expired-media"
JOB_CLEANUP_TRENDING_TOPICS = "cleanup-expired-trending-topics"

JOB_DISPATCH_CURATED_TOPICS = "dispatch-curated-topics"
JOB_SYNC_CURATED_TOPIC = "sync-curated-topic"
JOB_DIGEST_RECENT_TOPICS = "digest-recent-topics"
JOB_GENERATE_SUGGESTIONS_AUTOMATED = "generate-suggestions-automated"
JOB_GENERATE_SUGGESTIONS = "generate-suggestions"

QUEUE_JOBS: dict[str, frozenset[str]] = {
    MEDIA_QUEUE: frozenset(
        {
            JOB_PROCESS_ACTOR_IMAGE,
            JOB_GENERATE_PAGE_IMAGE,
            JOB_PROCESS_IMAGE_UPLOAD,
            JOB_GENERATE_PAGE_AUDIO,
            JOB_GENERATE_ARTIFACT_AUDIO,
            JOB_GENERATE_STORY_AUDIO,
        }
    ),
    VIDEO_QUEUE: frozenset({JOB_GENERATE_ARTIFACT_VIDEO}),
    CONTENT_QUEUE: frozenset({JOB_GENERATE_STORY, JOB_GENERATE_STORY_IMAGES}),
    CLEANUP_QUEUE: frozenset({JOB_CLEANUP_EXPIRED_MEDIA, JOB_CLEANUP_TRENDING_TOPICS}),
    GHOST_QUEUE: frozenset(
        {
            JOB_DISPATCH_CURATED_TOPICS,
            JOB_SYNC_CURATED_TOPIC,
            JOB_DIGEST_RECENT_TOPICS,
            JOB_GENERATE_SUGGESTIONS_AUTOMATED,
            JOB_GENERATE_SUGGESTIONS,
        }
    ),
}

ALL_QUEUES: tuple[str, ...] = tuple(QUEUE_JOBS)


def declared_jobs(queue_name: str) -> frozenset[str]:
    try:
        return QUEUE_JOBS[queue_name]
    except KeyError:
        raise ValueError(f"Unknown queue {queue_name!r}") from None
