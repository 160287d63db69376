"""Service for managing rate limits on shared external resources."""

from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select

from ..orm.base import utcnow
from ..orm.rate_limit import RateLimitEvent
from .database import DatabaseService


class RateLimitService:
    """Sliding one-hour window of actions per resource."""

    def __init__(
        self,
        db: DatabaseService,
        max_per_hour: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.max_per_hour = max_per_hour
        self.clock = clock

    async def _count_recent(self, resource_key: str) -> int:
        cutoff = self.clock() - timedelta(hours=1)

        async with self.db.session() as session:
            result = await session.execute(
                select(func.count(RateLimitEvent.id)).where(
                    RateLimitEvent.resource_key == resource_key,
                    RateLimitEvent.event_timestamp > cutoff,
                    RateLimitEvent.is_deleted == False,  # noqa: E712
                )
            )
            return result.scalar_one()

    async def is_allowed(self, resource_key: str) -> bool:
        """Check if another action against the resource is allowed right now."""
        return await self._count_recent(resource_key) < self.max_per_hour

    async def record_request(self, resource_key: str, reference: Optional[str] = None):
        """Record a rate limit event."""
        async with self.db.session() as session:
            event = RateLimitEvent(
                resource_key=resource_key,
                event_timestamp=self.clock(),
                reference=reference,
            )
            session.add(event)
            await session.commit()

    async def get_remaining(self, resource_key: str) -> int:
        """Get remaining actions for a resource in the current window."""
        return max(0, self.max_per_hour - await self._count_recent(resource_key))

    async def cleanup_old_events(self, days: int = 7):
        """Clean up rate limit events older than N days."""
        cutoff = self.clock() - timedelta(days=days)

        async with self.db.session() as session:
            result = await session.execute(
                select(RateLimitEvent).where(
                    RateLimitEvent.event_timestamp < cutoff,
                    RateLimitEvent.is_deleted == False,  # noqa: E712
                )
            )
            old_events = result.scalars().all()
            for event in old_events:
                event.is_deleted = True
            await session.commit()
