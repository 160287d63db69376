"""ORM models for database persistence."""

from .assignment import Assignment, AssignmentStatus, AssignmentType
from .base import Base, SqlalchemyBase, UTCDateTime, utcnow
from .channel_activity import ChannelActivity
from .channel_message import ChannelMessage
from .rate_limit import RateLimitEvent
from .thread_state import ThreadState
from .video_job import VideoJob, VideoJobStatus

__all__ = [
    "Assignment",
    "AssignmentStatus",
    "AssignmentType",
    "Base",
    "ChannelActivity",
    "ChannelMessage",
    "RateLimitEvent",
    "SqlalchemyBase",
    "ThreadState",
    "UTCDateTime",
    "VideoJob",
    "VideoJobStatus",
    "utcnow",
]
