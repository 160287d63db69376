"""Service for recording channel messages and activity."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..orm.base import utcnow
from ..orm.channel_activity import ChannelActivity
from ..orm.channel_message import ChannelMessage
from .database import DatabaseService

logger = logging.getLogger(__name__)


class ActivityService:
    """Append-only message ledger plus last-activity index per channel."""

    def __init__(self, db: DatabaseService, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def record_message(
        self,
        channel_id: str,
        author_id: Optional[str],
        author_username: Optional[str] = None,
        message_id: Optional[str] = None,
        guild_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> ChannelMessage:
        """Store a message and bump the channel's last activity."""
        timestamp = timestamp or self.clock()
        async with self.db.session() as session:
            message = ChannelMessage(
                channel_id=channel_id,
                guild_id=guild_id,
                message_id=message_id,
                author_id=author_id,
                author_username=author_username,
                timestamp=timestamp,
            )
            session.add(message)
            await session.execute(self._touch_statement(channel_id, guild_id, timestamp))
        return message

    async def touch_channel(
        self, channel_id: str, guild_id: Optional[str] = None, timestamp: Optional[datetime] = None
    ) -> None:
        """Record activity without a message (reactions, joins, ...)."""
        async with self.db.session() as session:
            await session.execute(
                self._touch_statement(channel_id, guild_id, timestamp or self.clock())
            )

    async def get_recent_messages(self, channel_id: str, limit: int = 100) -> list[ChannelMessage]:
        """Newest messages first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(ChannelMessage)
                .where(
                    ChannelMessage.channel_id == channel_id,
                    ChannelMessage.is_deleted == False,  # noqa: E712
                )
                .order_by(ChannelMessage.timestamp.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def cleanup_old_messages(self, days: int = 30):
        """Clean up messages older than N days (soft delete)."""
        cutoff = self.clock() - timedelta(days=days)

        async with self.db.session() as session:
            result = await session.execute(
                select(ChannelMessage).where(
                    ChannelMessage.timestamp < cutoff,
                    ChannelMessage.is_deleted == False,  # noqa: E712
                )
            )
            old_messages = result.scalars().all()
            for message in old_messages:
                message.is_deleted = True
            await session.commit()
        logger.debug("Soft-deleted %d message(s) older than %d day(s)", len(old_messages), days)

    def _touch_statement(self, channel_id: str, guild_id: Optional[str], timestamp: datetime):
        stmt = sqlite_insert(ChannelActivity).values(
            id=str(uuid4()),
            channel_id=channel_id,
            guild_id=guild_id,
            last_activity_timestamp=timestamp,
            created_at=timestamp,
            updated_at=timestamp,
        )
        # Never move the activity clock backwards for late-arriving messages.
        return stmt.on_conflict_do_update(
            index_elements=[ChannelActivity.channel_id],
            set_={
                "guild_id": func.coalesce(stmt.excluded.guild_id, ChannelActivity.guild_id),
                "last_activity_timestamp": stmt.excluded.last_activity_timestamp,
                "updated_at": stmt.excluded.updated_at,
            },
            where=stmt.excluded.last_activity_timestamp > ChannelActivity.last_activity_timestamp,
        )
