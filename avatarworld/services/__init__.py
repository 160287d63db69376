"""Service layer for scheduling, queueing and database operations."""

from .activity_service import ActivityService
from .assignment_queue_service import AssignmentQueueService, NewAssignment
from .conversation_thread_service import (
    ConversationThread,
    ConversationThreadService,
    normalize_participant_id,
)
from .database import DatabaseService, init_db_service
from .notifications import LogNotifier, Notifier, UnconfiguredVideoGenerator, VideoGenerator
from .rate_limit_service import RateLimitService
from .result import StoreResult
from .scheduling_service import SchedulingService
from .thread_state_service import ActiveChannel, ThreadStateService, ThreadStateSnapshot
from .video_job_service import FailureOutcome, VideoJobService

__all__ = [
    "ActiveChannel",
    "ActivityService",
    "AssignmentQueueService",
    "ConversationThread",
    "ConversationThreadService",
    "DatabaseService",
    "FailureOutcome",
    "LogNotifier",
    "NewAssignment",
    "Notifier",
    "RateLimitService",
    "SchedulingService",
    "StoreResult",
    "ThreadStateService",
    "ThreadStateSnapshot",
    "UnconfiguredVideoGenerator",
    "VideoGenerator",
    "VideoJobService",
    "init_db_service",
    "normalize_participant_id",
]
