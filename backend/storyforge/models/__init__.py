from storyforge.db.base import Base  # noqa: F401
from storyforge.models.content import (
    Account,
    Actor,
    App,
    Artifact,
    ArtifactPage,
    ArtifactStatus,
    ImageStatus,
    Input,
    PageImageStatus,
)  # noqa: F401
from storyforge.models.ghost import ConnectedAccount, PostSuggestion, UserTopicPreference  # noqa: F401
from storyforge.models.jobs import BackgroundJob, BackgroundJobEvent, BackoffType, JobStatus, RepeatableJob  # noqa: F401
from storyforge.models.media import Media, MediaOwnerType, MediaStatus, MediaType  # noqa: F401
from storyforge.models.topics import CuratedTopic, NetworkPost, TopicType, TrendingTopic  # noqa: F401

__all__ = [
    "Base",
    "Account",
    "Actor",
    "App",
    "Artifact",
    "ArtifactPage",
    "ArtifactStatus",
    "ImageStatus",
    "Input",
    "PageImageStatus",
    "ConnectedAccount",
    "PostSuggestion",
    "UserTopicPreference",
    "BackgroundJob",
    "BackgroundJobEvent",
    "BackoffType",
    "JobStatus",
    "RepeatableJob",
    "Media",
    "MediaOwnerType",
    "MediaStatus",
    "MediaType",
    "CuratedTopic",
    "NetworkPost",
    "TopicType",
    "TrendingTopic",
]
