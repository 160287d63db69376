"""VideoJob model for the background generation queue."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase, UTCDateTime


class VideoJobStatus(str, Enum):
    """Video job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class VideoJob(SqlalchemyBase):
    """A queued image-to-video generation request."""

    __tablename__ = "video_jobs"
    __table_args__ = (
        Index("idx_video_jobs_status_next_run", "status", "next_run_at"),
        Index("idx_video_jobs_created_at", "created_at"),
        Index("idx_video_jobs_updated_at", "updated_at"),
    )

    type: Mapped[str] = mapped_column(String, nullable=False, default="veo-image-to-video")
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=VideoJobStatus.QUEUED.value
    )
    next_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    claim_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Request
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    keyframe_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    channel_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guild_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    avatar_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    avatar_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Outcome
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<VideoJob(id={self.id}, status={self.status}, attempts={self.attempts}, "
            f"channel={self.channel_id})>"
        )
