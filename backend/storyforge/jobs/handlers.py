from __future__ import annotations

from storyforge.jobs import audio, cleanup, content, images, suggestions, topics, video
from storyforge.jobs.context import JobHandler, build_handler_map
from storyforge.queues import registry


def handlers_for(queue_name: str) -> dict[str, JobHandler]:
    if queue_name == registry.MEDIA_QUEUE:
        return build_handler_map(
            [
                (registry.JOB_PROCESS_ACTOR_IMAGE, images.process_actor_image),
                (registry.JOB_GENERATE_PAGE_IMAGE, images.generate_page_image),
                (registry.JOB_PROCESS_IMAGE_UPLOAD, images.process_image_upload),
                (registry.JOB_GENERATE_PAGE_AUDIO, audio.generate_page_audio),
                (registry.JOB_GENERATE_ARTIFACT_AUDIO, audio.generate_artifact_audio),
                (registry.JOB_GENERATE_STORY_AUDIO, audio.generate_story_audio),
            ]
        )
    if queue_name == registry.VIDEO_QUEUE:
        return build_handler_map([(registry.JOB_GENERATE_ARTIFACT_VIDEO, video.generate_artifact_video)])
    if queue_name == registry.CONTENT_QUEUE:
        return build_handler_map(
            [
                (registry.JOB_GENERATE_STORY, content.generate_story),
                (registry.JOB_GENERATE_STORY_IMAGES, content.generate_story_images),
            ]
        )
    if queue_name == registry.CLEANUP_QUEUE:
        return build_handler_map(
            [
                (registry.JOB_CLEANUP_EXPIRED_MEDIA, cleanup.cleanup_expired_media),
                (registry.JOB_CLEANUP_TRENDING_TOPICS, cleanup.cleanup_trending_topics),
            ]
        )
    if queue_name == registry.GHOST_QUEUE:
        return build_handler_map(
            [
                (registry.JOB_DISPATCH_CURATED_TOPICS, topics.dispatch_curated_topics),
                (registry.JOB_SYNC_CURATED_TOPIC, topics.sync_curated_topic),
                (registry.JOB_DIGEST_RECENT_TOPICS, topics.digest_recent_topics),
                (registry.JOB_GENERATE_SUGGESTIONS_AUTOMATED, suggestions.generate_suggestions_automated),
                (registry.JOB_GENERATE_SUGGESTIONS, suggestions.generate_suggestions),
            ]
        )
    raise ValueError(f"Unknown queue {queue_name!r}")
