"""ThreadState model: cached per-channel activity snapshot."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase, UTCDateTime


class ThreadState(SqlalchemyBase):
    """Derived view of who is talking in a channel. Not authoritative."""

    __tablename__ = "thread_states"
    __table_args__ = (
        Index("idx_thread_states_channel_id", "channel_id", unique=True),
        Index("idx_thread_states_last_activity", "last_activity_ts"),
    )

    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    guild_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_activity_ts: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    participants: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)
    participants_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recent_author_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    recent_authors: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
