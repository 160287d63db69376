"""FastAPI status server for queued work."""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, Query

from .orm.assignment import Assignment
from .orm.video_job import VideoJob
from .world import AvatarWorld

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_video_job(job: VideoJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
        "attempts": job.attempts,
        "prompt": job.prompt,
        "channel_id": job.channel_id,
        "avatar_id": job.avatar_id,
        "avatar_name": job.avatar_name,
        "result": job.result,
        "last_error": job.last_error,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
        "next_run_at": _iso(job.next_run_at),
    }


def serialize_assignment(assignment: Assignment) -> dict[str, Any]:
    return {
        "id": assignment.id,
        "type": assignment.type,
        "channel_id": assignment.channel_id,
        "avatar_id": assignment.avatar_id,
        "priority": assignment.priority,
        "status": assignment.status,
        "worker_id": assignment.worker_id,
        "result": assignment.result,
        "error": assignment.error,
        "created_at": _iso(assignment.created_at),
        "updated_at": _iso(assignment.updated_at),
    }


def create_app(world: AvatarWorld) -> FastAPI:
    """Create the read-only status application.

    Args:
        world: Running AvatarWorld whose queues are exposed.

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Avatar World Scheduler",
        description="Read-only view of planner assignments and video jobs",
        version="1.0.0",
    )

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "video_jobs_in_flight": world.video_jobs.in_flight,
            "scheduled_tasks": world.scheduler.task_names,
        }

    @app.get("/video-jobs")
    async def list_video_jobs(
        status: Optional[str] = None,
        limit: int = Query(default=50, ge=1),
    ) -> dict[str, Any]:
        jobs = await world.video_jobs.list_jobs(status=status, limit=limit)
        return {"jobs": [serialize_video_job(job) for job in jobs]}

    @app.get("/assignments")
    async def list_assignments(
        status: Optional[str] = None,
        limit: int = Query(default=50, ge=1, le=200),
    ) -> dict[str, Any]:
        assignments = await world.assignments.list_assignments(status=status, limit=limit)
        return {"assignments": [serialize_assignment(a) for a in assignments]}

    return app
