"""ChannelMessage model: raw chat messages seen by the bot."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase, UTCDateTime


class ChannelMessage(SqlalchemyBase):
    """A message observed in a channel."""

    __tablename__ = "channel_messages"
    __table_args__ = (
        Index("idx_channel_messages_channel_timestamp", "channel_id", "timestamp"),
    )

    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    guild_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    author_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    author_username: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
