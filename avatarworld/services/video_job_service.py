"""Background runner for video generation jobs.

Jobs live in the ``video_jobs`` table. A scheduler tick calls
``process_loop``, which claims eligible jobs one at a time with a single
conditional update and hands each to its own asyncio task, up to
``max_concurrent`` in flight. The loop never waits for a job to finish.

Job lifecycle::

    queued -> running -> done
                      -> queued   (retry after backoff, or rate-limit deferral)
                      -> failed   (attempts exhausted)

A deferral caused by the shared rate limiter does not consume an attempt.

Each claim stamps a fresh ``claim_token``. While a job runs its heartbeat is
refreshed every third of ``stale_running_ms``; a job whose heartbeat goes
stale can be reclaimed, and writes carrying the old token are then dropped.
Terminal states are never left.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Coroutine, Optional
from uuid import uuid4

from sqlalchemy import and_, delete, or_, select, update

from ..config import VideoJobConfig
from ..orm.base import utcnow
from ..orm.video_job import VideoJob, VideoJobStatus
from .database import DatabaseService
from .notifications import Notifier, VideoGenerator
from .result import TRANSIENT_STORE_ERRORS

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_CONFIG = {"aspectRatio": "16:9", "numberOfVideos": 1}
RATE_LIMIT_RESOURCE = "veo"
PURGE_REASON = "RESTART_PURGE"
PENDING_STATUSES = (VideoJobStatus.QUEUED.value, VideoJobStatus.RUNNING.value)


@dataclass
class FailureOutcome:
    """Where a failed job ended up."""

    attempts: int
    status: str
    next_run_at: Optional[datetime]


class VideoJobService:
    """Queue, claim and execute video jobs with bounded concurrency."""

    def __init__(
        self,
        db: DatabaseService,
        generator: VideoGenerator,
        config: Optional[VideoJobConfig] = None,
        rate_limiter: Any = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.generator = generator
        self.config = config or VideoJobConfig()
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.clock = clock

        self._running = False
        self._in_flight = 0
        self._started = False
        self._background: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def start(self, scheduler) -> None:
        """Purge leftovers if configured, register the poll task and run once."""
        await self.purge_on_start()
        scheduler.add_task("video-jobs", self.process_loop, self.config.poll_interval_ms)
        self._started = True
        logger.info("Video job runner started (poll every %d ms)", self.config.poll_interval_ms)
        await self.process_loop()

    async def stop(self) -> None:
        """Stop nudging the loop and wait for in-flight jobs."""
        self._started = False
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait until no job or nudge task is pending."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def enqueue(
        self,
        prompt: str,
        keyframe_url: Optional[str] = None,
        channel_id: Optional[str] = None,
        guild_id: Optional[str] = None,
        avatar_id: Optional[str] = None,
        avatar_name: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
    ) -> str:
        """Queue a job for immediate pickup.

        Returns:
            The new job id.
        """
        now = self.clock()
        job = VideoJob(
            status=VideoJobStatus.QUEUED.value,
            created_at=now,
            updated_at=now,
            next_run_at=now,
            attempts=0,
            prompt=str(prompt or ""),
            keyframe_url=keyframe_url,
            channel_id=channel_id,
            guild_id=guild_id,
            avatar_id=avatar_id,
            avatar_name=avatar_name,
            config=dict(config or DEFAULT_VIDEO_CONFIG),
        )
        async with self.db.session() as session:
            session.add(job)
        logger.info(
            "Enqueued video job %s for channel=%s avatar=%s",
            job.id,
            channel_id,
            avatar_name or avatar_id,
        )
        if self._started:
            # Don't wait for the next poll
            self._spawn(self.process_loop())
        return job.id

    async def get_job(self, job_id: str) -> Optional[VideoJob]:
        async with self.db.session() as session:
            return await session.get(VideoJob, job_id)

    async def list_jobs(self, status: Optional[str] = None, limit: int = 50) -> list[VideoJob]:
        """Newest jobs first; ``limit`` is capped at 200."""
        limit = max(1, min(200, limit))
        query = select(VideoJob).where(VideoJob.is_deleted == False)  # noqa: E712
        if status:
            query = query.where(VideoJob.status == status)
        query = query.order_by(VideoJob.created_at.desc()).limit(limit)
        async with self.db.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def process_loop(self) -> int:
        """Claim and dispatch jobs until the concurrency ceiling is reached.

        Returns:
            Number of jobs claimed by this pass.
        """
        if self._running:
            return 0
        self._running = True
        claimed = 0
        try:
            while self._in_flight < self.config.max_concurrent:
                job = await self._claim_job()
                if job is None:
                    break
                self._in_flight += 1
                claimed += 1
                task = self._spawn(self._process(job))
                task.add_done_callback(self._release_slot)
        finally:
            self._running = False
        return claimed

    async def mark_completed(
        self, job_id: str, uris: list[str], claim_token: Optional[str] = None
    ) -> bool:
        return await self._update(
            job_id,
            claim_token,
            status=VideoJobStatus.DONE.value,
            result={"uris": list(uris)},
            next_run_at=None,
        )

    async def mark_failed(
        self, job_id: str, error: Any, claim_token: Optional[str] = None
    ) -> Optional[FailureOutcome]:
        """Count a failed attempt and either schedule a retry or give up.

        The attempt counter is incremented in the database, not read and
        written back, so concurrent failures can't lose an attempt. Jobs that
        are already terminal, or were reclaimed under a different
        ``claim_token``, are left alone and None is returned.
        """
        now = self.clock()
        message = str(error) or type(error).__name__
        async with self.db.session() as session:
            result = await session.execute(
                update(VideoJob)
                .where(self._owned(job_id, claim_token))
                .values(attempts=VideoJob.attempts + 1)
                .returning(VideoJob.attempts)
                .execution_options(synchronize_session=False)
            )
            attempts = result.scalar_one_or_none()
            if attempts is None:
                return None

            if attempts >= self.config.max_attempts:
                status = VideoJobStatus.FAILED.value
                next_run_at = None
            else:
                status = VideoJobStatus.QUEUED.value
                next_run_at = now + self.backoff_delay(attempts)

            await session.execute(
                update(VideoJob)
                .where(VideoJob.id == job_id)
                .values(status=status, next_run_at=next_run_at, last_error=message, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return FailureOutcome(attempts=attempts, status=status, next_run_at=next_run_at)

    async def mark_cancelled(self, job_id: str, reason: str = "cancelled") -> bool:
        return await self._update(
            job_id,
            status=VideoJobStatus.CANCELLED.value,
            last_error=str(reason),
            next_run_at=None,
        )

    async def defer(
        self, job_id: str, delay_ms: int, claim_token: Optional[str] = None
    ) -> bool:
        """Put a job back in the queue without counting an attempt."""
        return await self._update(
            job_id,
            claim_token,
            status=VideoJobStatus.QUEUED.value,
            next_run_at=self.clock() + timedelta(milliseconds=delay_ms),
        )

    def backoff_delay(self, attempts: int) -> timedelta:
        """Linear backoff, capped at max_backoff_ms."""
        delay_ms = min(self.config.backoff_base_ms * attempts, self.config.max_backoff_ms)
        return timedelta(milliseconds=delay_ms)

    async def purge_on_start(self) -> int:
        """Cancel (or delete) queued and running jobs left over from a previous run."""
        if not self.config.clear_on_start:
            return 0
        try:
            async with self.db.session() as session:
                if self.config.delete_on_purge:
                    result = await session.execute(
                        delete(VideoJob)
                        .where(VideoJob.status.in_(PENDING_STATUSES))
                        .execution_options(synchronize_session=False)
                    )
                    action = "Deleted"
                else:
                    result = await session.execute(
                        update(VideoJob)
                        .where(VideoJob.status.in_(PENDING_STATUSES))
                        .values(
                            status=VideoJobStatus.CANCELLED.value,
                            last_error=PURGE_REASON,
                            next_run_at=None,
                            updated_at=self.clock(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    action = "Cancelled"
                count = result.rowcount or 0
        except TRANSIENT_STORE_ERRORS as e:
            logger.warning("Video job purge on start failed: %s", e)
            return 0
        logger.warning("%s %d queued/running video job(s) on start", action, count)
        return count

    async def _claim_job(self) -> Optional[VideoJob]:
        now = self.clock()
        eligible = and_(
            VideoJob.status == VideoJobStatus.QUEUED.value,
            VideoJob.next_run_at <= now,
        )
        if self.config.stale_running_ms > 0:
            stale_before = now - timedelta(milliseconds=self.config.stale_running_ms)
            eligible = or_(
                eligible,
                and_(
                    VideoJob.status == VideoJobStatus.RUNNING.value,
                    VideoJob.heartbeat_at <= stale_before,
                ),
            )

        next_id = (
            select(VideoJob.id)
            .where(eligible, VideoJob.is_deleted == False)  # noqa: E712
            .order_by(VideoJob.created_at.asc())
            .limit(1)
            .scalar_subquery()
        )
        stmt = (
            update(VideoJob)
            .where(VideoJob.id == next_id, eligible)
            .values(
                status=VideoJobStatus.RUNNING.value,
                updated_at=now,
                heartbeat_at=now,
                claim_token=str(uuid4()),
            )
            .returning(VideoJob)
        )
        try:
            async with self.db.session() as session:
                result = await session.execute(stmt)
                job = result.scalars().first()
        except TRANSIENT_STORE_ERRORS as e:
            logger.warning("Video job claim failed: %s", e)
            return None

        if job is not None:
            logger.info("Claimed video job %s (attempts=%d)", job.id, job.attempts)
        else:
            logger.debug("No claimable video jobs at %s", now.isoformat())
        return job

    async def _process(self, job: VideoJob) -> None:
        heartbeat = None
        if self.config.stale_running_ms > 0:
            heartbeat = asyncio.create_task(self._keep_alive(job))
        try:
            logger.info("Processing video job %s...", job.id)
            if not await self._rate_limit_allows():
                await self.defer(job.id, self.config.rate_limit_defer_ms, job.claim_token)
                logger.warning("Deferred video job %s: rate limit reached", job.id)
                return

            if self.config.notify_progress:
                await self._notify(job, "-# [ 🎥 processing your video... ]")

            uris = await self.generator.generate(job)
            if not uris:
                raise RuntimeError("No URIs returned from video generator")

            if not await self.mark_completed(job.id, uris, job.claim_token):
                logger.warning("Video job %s was reclaimed before it finished, dropping result", job.id)
                return
            logger.info("Video job %s completed with %d clip(s)", job.id, len(uris))
            await self._record_usage(job)
            await self._notify(job, "\n".join(f"-# [ 🎥 [Scene Clip]({uri}) ]" for uri in uris))
        except Exception as e:
            logger.warning("Video job %s failed: %s", job.id, e)
            await self._handle_failure(job, e)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

    async def _handle_failure(self, job: VideoJob, error: Exception) -> None:
        try:
            outcome = await self.mark_failed(job.id, error, job.claim_token)
        except TRANSIENT_STORE_ERRORS as e:
            logger.error("Could not record failure of video job %s: %s", job.id, e)
            return
        if outcome is None:
            return
        if outcome.status == VideoJobStatus.FAILED.value:
            detail = (str(error) or "unknown error")[:180]
            await self._notify(job, f"-# [ 🎥 video request failed: {detail} ]")
        elif self.config.notify_progress and outcome.attempts == 1:
            await self._notify(
                job,
                f"-# [ 🎥 temporary issue, retrying... (attempt {outcome.attempts}) ] Will retry soon.",
            )

    async def _rate_limit_allows(self) -> bool:
        if self.rate_limiter is None:
            return True
        allowed = self.rate_limiter.is_allowed(RATE_LIMIT_RESOURCE)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        return bool(allowed)

    async def _record_usage(self, job: VideoJob) -> None:
        record = getattr(self.rate_limiter, "record_request", None)
        if record is None:
            return
        try:
            outcome = record(RATE_LIMIT_RESOURCE, job.id)
            if inspect.isawaitable(outcome):
                await outcome
        except TRANSIENT_STORE_ERRORS as e:
            logger.warning("Could not record rate limit usage for job %s: %s", job.id, e)

    async def _notify(self, job: VideoJob, text: str) -> None:
        if self.notifier is None or not job.channel_id or not job.avatar_id:
            return
        avatar = {"id": job.avatar_id, "name": job.avatar_name or "Avatar"}
        try:
            await self.notifier.send(job.channel_id, text, avatar)
        except Exception as e:
            logger.warning("Video job %s notification failed: %s", job.id, e)

    def _owned(self, job_id: str, claim_token: Optional[str] = None):
        """Match a non-terminal job, and only the current claim when a token is given."""
        clauses = [VideoJob.id == job_id, VideoJob.status.in_(PENDING_STATUSES)]
        if claim_token is not None:
            clauses.append(VideoJob.claim_token == claim_token)
        return and_(*clauses)

    async def _update(self, job_id: str, claim_token: Optional[str] = None, **values: Any) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                update(VideoJob)
                .where(self._owned(job_id, claim_token))
                .values(updated_at=self.clock(), **values)
                .execution_options(synchronize_session=False)
            )
            return (result.rowcount or 0) > 0

    async def _keep_alive(self, job: VideoJob) -> None:
        """Refresh the job heartbeat until cancelled or the claim is lost."""
        interval = self.config.stale_running_ms / 3 / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.db.session() as session:
                    result = await session.execute(
                        update(VideoJob)
                        .where(
                            VideoJob.id == job.id,
                            VideoJob.status == VideoJobStatus.RUNNING.value,
                            VideoJob.claim_token == job.claim_token,
                        )
                        .values(heartbeat_at=self.clock())
                        .execution_options(synchronize_session=False)
                    )
            except TRANSIENT_STORE_ERRORS as e:
                logger.warning("Heartbeat for video job %s failed: %s", job.id, e)
                continue
            if not result.rowcount:
                logger.warning("Video job %s is no longer held by this worker", job.id)
                return

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _release_slot(self, task: asyncio.Task) -> None:
        self._in_flight = max(0, self._in_flight - 1)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Video job task crashed: %s", task.exception())
