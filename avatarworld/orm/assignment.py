"""Assignment model for the planner's durable work queue."""

from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class AssignmentType(str, Enum):
    """Kinds of planned work."""

    RESPOND = "respond"
    OTHER = "other"


class AssignmentStatus(str, Enum):
    """Assignment lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    FAILED = "failed"


ACTIVE_ASSIGNMENT_STATUSES = (AssignmentStatus.PENDING.value, AssignmentStatus.CLAIMED.value)
TERMINAL_ASSIGNMENT_STATUSES = (AssignmentStatus.DONE.value, AssignmentStatus.FAILED.value)


class Assignment(SqlalchemyBase):
    """A unit of planned work: act as an avatar in a channel."""

    __tablename__ = "planner_assignments"
    __table_args__ = (
        Index("idx_assignments_claim_order", "status", "priority", "created_at"),
        Index("idx_assignments_dedupe_key", "type", "channel_id", "avatar_id", "status"),
    )

    type: Mapped[str] = mapped_column(String, nullable=False)
    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    avatar_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=AssignmentStatus.PENDING.value
    )
    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    result: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def dedupe_key(self) -> tuple[str, str, Optional[str]]:
        return (self.type, self.channel_id, self.avatar_id)

    def __repr__(self) -> str:
        return (
            f"<Assignment(id={self.id}, type={self.type}, channel={self.channel_id}, "
            f"avatar={self.avatar_id}, status={self.status})>"
        )
