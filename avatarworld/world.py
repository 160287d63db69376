"""Wires the scheduling core together for a host process."""

import asyncio
import logging
from typing import Optional

from .config import Config
from .services import (
    ActivityService,
    AssignmentQueueService,
    ConversationThreadService,
    DatabaseService,
    LogNotifier,
    Notifier,
    RateLimitService,
    SchedulingService,
    ThreadStateService,
    UnconfiguredVideoGenerator,
    VideoGenerator,
    VideoJobService,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_CLEANUP_INTERVAL_MS = 6 * 60 * 60 * 1000


class AvatarWorld:
    """Owns every service instance for one process.

    Construct once at startup, ``start()`` it inside the running event loop
    and ``close()`` it on shutdown.
    """

    def __init__(
        self,
        config: Config,
        db: DatabaseService,
        generator: Optional[VideoGenerator] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.config = config
        self.db = db
        self.scheduler = SchedulingService()
        self.notifier = notifier or LogNotifier()

        self.activity = ActivityService(db)
        self.assignments = AssignmentQueueService(db, config.assignments)
        self.threads = ConversationThreadService(config.threads)
        self.thread_states = ThreadStateService(db, config.thread_state)
        self.rate_limits = RateLimitService(db, config.video_jobs.rate_limit_per_hour)
        self.video_jobs = VideoJobService(
            db,
            generator or UnconfiguredVideoGenerator(),
            config=config.video_jobs,
            rate_limiter=self.rate_limits,
            notifier=self.notifier,
        )

    async def start(self) -> None:
        """Register every periodic task."""
        self.threads.register(self.scheduler)
        self.scheduler.add_task(
            "rate-limit-cleanup", self.rate_limits.cleanup_old_events, RATE_LIMIT_CLEANUP_INTERVAL_MS
        )
        await self.video_jobs.start(self.scheduler)
        logger.info("Scheduled tasks: %s", ", ".join(self.scheduler.task_names))

    async def run_once(self) -> None:
        """Run every scheduled task a single time and wait for spawned jobs."""
        await self.scheduler.run_all_once()
        await self.video_jobs.wait_idle()

    async def run(self) -> None:
        """Run until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            logger.info("Received shutdown signal, exiting...")
            raise

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.video_jobs.stop()
        self.threads.close()
