"""ChannelActivity model: last activity per channel."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase, UTCDateTime


class ChannelActivity(SqlalchemyBase):
    """Most recent activity seen in a channel."""

    __tablename__ = "channel_activity"
    __table_args__ = (
        Index("idx_channel_activity_channel_id", "channel_id", unique=True),
        Index("idx_channel_activity_last_activity", "last_activity_timestamp"),
    )

    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    guild_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_activity_timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
