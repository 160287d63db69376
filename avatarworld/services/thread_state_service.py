"""Per-channel activity snapshots for the planner.

Snapshots are derived from the raw message ledger and cached in
``thread_states``. A cached snapshot younger than the staleness window is
served as is; anything older is recomputed from the latest messages.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..config import ThreadStateConfig
from ..orm.base import utcnow
from ..orm.channel_activity import ChannelActivity
from ..orm.channel_message import ChannelMessage
from ..orm.thread_state import ThreadState
from .database import DatabaseService
from .result import TRANSIENT_STORE_ERRORS

logger = logging.getLogger(__name__)


@dataclass
class ActiveChannel:
    """A channel with recent activity."""

    channel_id: str
    guild_id: Optional[str]
    last_activity_ts: datetime


@dataclass
class ThreadStateSnapshot:
    """What is going on in a channel, as of ``updated_at``."""

    channel_id: str
    guild_id: Optional[str]
    last_activity_ts: datetime
    last_message_id: Optional[str]
    participants: dict[str, int] = field(default_factory=dict)
    participants_count: int = 0
    recent_author_ids: list[str] = field(default_factory=list)
    recent_authors: list[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: ThreadState) -> "ThreadStateSnapshot":
        return cls(
            channel_id=row.channel_id,
            guild_id=row.guild_id,
            last_activity_ts=row.last_activity_ts,
            last_message_id=row.last_message_id,
            participants=dict(row.participants or {}),
            participants_count=row.participants_count,
            recent_author_ids=list(row.recent_author_ids or []),
            recent_authors=list(row.recent_authors or []),
            updated_at=row.updated_at,
            created_at=row.created_at,
        )


def _distinct(values) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)


class ThreadStateService:
    """Compute and cache channel snapshots."""

    def __init__(
        self,
        db: DatabaseService,
        config: Optional[ThreadStateConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config or ThreadStateConfig()
        self.clock = clock

    async def get_active_channels(
        self, lookback_ms: int = 15 * 60_000, limit: int = 50
    ) -> list[ActiveChannel]:
        """Channels active within ``lookback_ms``, most recent first."""
        since = self.clock() - timedelta(milliseconds=max(0, lookback_ms))
        async with self.db.session() as session:
            result = await session.execute(
                select(ChannelActivity)
                .where(
                    ChannelActivity.last_activity_timestamp >= since,
                    ChannelActivity.is_deleted == False,  # noqa: E712
                )
                .order_by(ChannelActivity.last_activity_timestamp.desc())
                .limit(limit)
            )
            return [
                ActiveChannel(
                    channel_id=row.channel_id,
                    guild_id=row.guild_id,
                    last_activity_ts=row.last_activity_timestamp,
                )
                for row in result.scalars().all()
            ]

    async def compute_and_upsert_state(
        self, channel_id: str, guild_id: Optional[str] = None
    ) -> Optional[ThreadStateSnapshot]:
        """Rebuild a channel's snapshot from its latest messages.

        Participant counts cover the whole message window; the recent author
        lists only look at the newest few messages.

        Returns:
            The stored snapshot, or None if the computation failed.
        """
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(ChannelMessage)
                    .where(
                        ChannelMessage.channel_id == channel_id,
                        ChannelMessage.is_deleted == False,  # noqa: E712
                    )
                    .order_by(ChannelMessage.timestamp.desc())
                    .limit(self.config.message_window)
                )
                messages = list(result.scalars().all())

                participants: dict[str, int] = {}
                for message in messages:
                    if message.author_id:
                        participants[message.author_id] = participants.get(message.author_id, 0) + 1

                recent = messages[: self.config.recent_window]
                now = self.clock()
                last = messages[0] if messages else None
                snapshot = ThreadStateSnapshot(
                    channel_id=channel_id,
                    guild_id=guild_id,
                    last_activity_ts=last.timestamp if last else now,
                    last_message_id=last.message_id if last else None,
                    participants=participants,
                    participants_count=len(participants),
                    recent_author_ids=_distinct(m.author_id for m in recent),
                    recent_authors=_distinct(m.author_username for m in recent),
                    updated_at=now,
                )

                fields = {
                    "guild_id": snapshot.guild_id,
                    "last_activity_ts": snapshot.last_activity_ts,
                    "last_message_id": snapshot.last_message_id,
                    "participants": snapshot.participants,
                    "participants_count": snapshot.participants_count,
                    "recent_author_ids": snapshot.recent_author_ids,
                    "recent_authors": snapshot.recent_authors,
                    "updated_at": now,
                }
                stmt = sqlite_insert(ThreadState).values(
                    id=str(uuid4()), channel_id=channel_id, created_at=now, **fields
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[ThreadState.channel_id],
                    set_={name: stmt.excluded[name] for name in fields},
                ).returning(ThreadState.created_at)
                upserted = await session.execute(stmt)
                snapshot.created_at = upserted.scalar_one()
            return snapshot
        except Exception as e:
            logger.warning("Thread state compute failed for channel %s: %s", channel_id, e)
            return None

    async def get_cached_state(self, channel_id: str) -> Optional[ThreadStateSnapshot]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ThreadState).where(
                    ThreadState.channel_id == channel_id,
                    ThreadState.is_deleted == False,  # noqa: E712
                )
            )
            row = result.scalar_one_or_none()
            return ThreadStateSnapshot.from_row(row) if row else None

    async def get_active_thread_states(
        self, lookback_ms: Optional[int] = None, limit: Optional[int] = None
    ) -> list[ThreadStateSnapshot]:
        """Fresh-enough snapshots for every active channel.

        A channel whose snapshot cannot be loaded or computed is skipped.
        """
        lookback_ms = self.config.lookback_ms if lookback_ms is None else lookback_ms
        limit = self.config.limit if limit is None else limit
        try:
            channels = await self.get_active_channels(lookback_ms, limit)
        except TRANSIENT_STORE_ERRORS as e:
            logger.warning("Active channel lookup failed: %s", e)
            return []

        staleness = timedelta(milliseconds=self.config.staleness_ms)
        states: list[ThreadStateSnapshot] = []
        for channel in channels:
            try:
                state = await self.get_cached_state(channel.channel_id)
                if state is None or state.updated_at is None or self.clock() - state.updated_at > staleness:
                    state = await self.compute_and_upsert_state(channel.channel_id, channel.guild_id)
                if state is not None:
                    states.append(state)
            except Exception as e:
                logger.warning("Skipping channel %s: %s", channel.channel_id, e)

        states.sort(key=lambda s: s.last_activity_ts, reverse=True)
        return states
