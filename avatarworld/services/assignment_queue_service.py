"""Durable queue for planner assignments.

Producers (the planner) enqueue "act as avatar Y in channel X" items; workers
claim them one at a time. The store is the only shared state between worker
processes, so every state change is a single conditional statement rather
than a read followed by a write.

Every public operation returns a ``StoreResult``. Store outages are logged
and reported through ``StoreResult.degraded`` instead of raised, because the
callers are periodic loops that simply try again on their next tick.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence, Union

from sqlalchemy import and_, or_, select, update

from ..config import AssignmentConfig
from ..orm.assignment import (
    ACTIVE_ASSIGNMENT_STATUSES,
    TERMINAL_ASSIGNMENT_STATUSES,
    Assignment,
    AssignmentStatus,
    AssignmentType,
)
from ..orm.base import utcnow
from .database import DatabaseService
from .result import TRANSIENT_STORE_ERRORS, StoreResult

logger = logging.getLogger(__name__)

DedupeKey = tuple[str, str, Optional[str]]

# SQLite caps expression depth at 1000 and bound parameters at 999
DEDUPE_QUERY_CHUNK = 200


@dataclass
class NewAssignment:
    """An assignment proposed by the planner, before it is stored."""

    channel_id: str
    avatar_id: Optional[str] = None
    type: str = AssignmentType.RESPOND.value
    priority: int = 0
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> DedupeKey:
        return (self.type, self.channel_id, self.avatar_id)


AssignmentInput = Union[NewAssignment, Mapping[str, Any]]


def _coerce(item: AssignmentInput) -> NewAssignment:
    if isinstance(item, NewAssignment):
        return item
    type_ = item.get("type", AssignmentType.RESPOND.value)
    if isinstance(type_, AssignmentType):
        type_ = type_.value
    avatar_id = item.get("avatar_id")
    return NewAssignment(
        channel_id=str(item["channel_id"]),
        avatar_id=str(avatar_id) if avatar_id is not None else None,
        type=str(type_),
        priority=int(item.get("priority", 0) or 0),
        payload=dict(item.get("payload") or {}),
    )


class AssignmentQueueService:
    """Enqueue, claim and settle planner assignments."""

    def __init__(
        self,
        db: DatabaseService,
        config: Optional[AssignmentConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config or AssignmentConfig()
        self.clock = clock
        # Recently inserted dedupe keys -> expiry. Optimisation only; the
        # store query in enqueue_unique is the authority.
        self._recent_keys: dict[DedupeKey, datetime] = {}

    async def enqueue(self, items: Iterable[AssignmentInput]) -> StoreResult[int]:
        """Insert assignments as pending without any dedupe."""
        candidates = [_coerce(item) for item in items]
        if not candidates:
            return StoreResult.ok(0)

        now = self.clock()
        rows = [
            Assignment(
                type=c.type,
                channel_id=c.channel_id,
                avatar_id=c.avatar_id,
                priority=c.priority,
                payload=c.payload or None,
                status=AssignmentStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            for c in candidates
        ]
        try:
            async with self.db.session() as session:
                session.add_all(rows)
        except TRANSIENT_STORE_ERRORS as e:
            logger.warning("Assignment enqueue failed: %s", e)
            return StoreResult.neutral(0, e)

        self._remember(c.dedupe_key for c in candidates)
        logger.debug("Enqueued %d assignment(s)", len(rows))
        return StoreResult.ok(len(rows))

    async def enqueue_unique(self, items: Iterable[AssignmentInput]) -> StoreResult[int]:
        """Insert only assignments with no pending/claimed twin.

        Filters in-batch duplicates and recently inserted keys first, then
        checks the store for the remaining candidates in chunked queries.
        """
        self._expire_recent_keys()

        candidates: list[NewAssignment] = []
        seen: set[DedupeKey] = set()
        for item in items:
            candidate = _coerce(item)
            key = candidate.dedupe_key
            if key in seen or key in self._recent_keys:
                continue
            seen.add(key)
            candidates.append(candidate)

        if not candidates:
            return StoreResult.ok(0)

        try:
            existing = await self._find_active_keys([c.dedupe_key for c in candidates])
        except TRANSIENT_STORE_ERRORS as e:
            logger.warning("Assignment dedupe query failed, enqueueing without it: %s", e)
            return await self.enqueue(candidates)

        residual = [c for c in candidates if c.dedupe_key not in existing]
        skipped = len(candidates) - len(residual)
        if skipped:
            logger.debug("Skipped %d duplicate assignment(s)", skipped)
        return await self.enqueue(residual)

    async def claim_next(
        self,
        worker_id: str = "planner",
        types: Sequence[Union[str, AssignmentType]] = (AssignmentType.RESPOND,),
    ) -> StoreResult[Optional[Assignment]]:
        """Atomically claim the highest-priority, oldest pending assignment."""
        type_values = [t.value if isinstance(t, AssignmentType) else str(t) for t in types]
        next_id = (
            select(Assignment.id)
            .where(
                Assignment.status == AssignmentStatus.PENDING.value,
                Assignment.type.in_(type_values),
                Assignment.is_deleted == False,  # noqa: E712
            )
            .order_by(Assignment.priority.desc(), Assignment.created_at.asc())
            .limit(1)
            .scalar_subquery()
        )
        stmt = (
            update(Assignment)
            .where(
                Assignment.id == next_id,
                Assignment.status == AssignmentStatus.PENDING.value,
            )
            .values(
                status=AssignmentStatus.CLAIMED.value,
                worker_id=worker_id,
                updated_at=self.clock(),
            )
            .returning(Assignment)
        )
        try:
            async with self.db.session() as session:
                result = await session.execute(stmt)
                claimed = result.scalars().first()
        except TRANSIENT_STORE_ERRORS as e:
            logger.warning("Assignment claim failed for worker %s: %s", worker_id, e)
            return StoreResult.neutral(None, e)

        if claimed is not None:
            logger.debug("Worker %s claimed assignment %s", worker_id, claimed.id)
        return StoreResult.ok(claimed)

    async def complete(self, assignment_id: str, result: Any = None) -> StoreResult[bool]:
        """Mark an assignment done. Repeats and unknown ids are no-ops."""
        return await self._settle(
            assignment_id,
            status=AssignmentStatus.DONE.value,
            result={} if result is None else result,
        )

    async def fail(self, assignment_id: str, error: Any) -> StoreResult[bool]:
        """Mark an assignment failed. Repeats and unknown ids are no-ops."""
        return await self._settle(
            assignment_id, status=AssignmentStatus.FAILED.value, error=str(error)
        )

    async def run_worker_cycle(
        self,
        handler: Callable[[Assignment], Awaitable[Any]],
        worker_id: Optional[str] = None,
        types: Sequence[Union[str, AssignmentType]] = (AssignmentType.RESPOND,),
        max_items: int = 1,
    ) -> int:
        """Claim up to ``max_items`` assignments and run ``handler`` on each.

        The handler's return value becomes the assignment result; an exception
        fails the assignment with its message.

        Returns:
            Number of assignments claimed and settled.
        """
        worker_id = worker_id or self.config.worker_id
        processed = 0
        while processed < max_items:
            claim = await self.claim_next(worker_id, types)
            assignment = claim.value
            if assignment is None:
                break
            try:
                outcome = await handler(assignment)
            except Exception as e:
                logger.warning("Assignment %s failed: %s", assignment.id, e)
                await self.fail(assignment.id, e)
            else:
                await self.complete(assignment.id, outcome)
            processed += 1
        return processed

    async def list_assignments(
        self, status: Optional[str] = None, limit: int = 50
    ) -> list[Assignment]:
        """Newest assignments first, optionally filtered by status."""
        query = select(Assignment).where(Assignment.is_deleted == False)  # noqa: E712
        if status:
            query = query.where(Assignment.status == status)
        query = query.order_by(Assignment.created_at.desc()).limit(limit)
        async with self.db.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    def clear_cache(self) -> None:
        """Forget every recently inserted dedupe key."""
        self._recent_keys.clear()

    async def _settle(self, assignment_id: str, **values: Any) -> StoreResult[bool]:
        stmt = (
            update(Assignment)
            .where(
                Assignment.id == assignment_id,
                Assignment.status.notin_(TERMINAL_ASSIGNMENT_STATUSES),
            )
            .values(updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.db.session() as session:
                result = await session.execute(stmt)
                moved = (result.rowcount or 0) > 0
        except TRANSIENT_STORE_ERRORS as e:
            logger.warning(
                "Assignment %s -> %s failed: %s", assignment_id, values.get("status"), e
            )
            return StoreResult.neutral(False, e)
        return StoreResult.ok(moved)

    async def _find_active_keys(self, keys: list[DedupeKey]) -> set[DedupeKey]:
        found: set[DedupeKey] = set()
        async with self.db.session() as session:
            for start in range(0, len(keys), DEDUPE_QUERY_CHUNK):
                chunk = keys[start : start + DEDUPE_QUERY_CHUNK]
                result = await session.execute(self._active_keys_query(chunk))
                found.update((row.type, row.channel_id, row.avatar_id) for row in result)
        return found

    def _active_keys_query(self, keys: list[DedupeKey]):
        conditions = []
        for type_, channel_id, avatar_id in keys:
            avatar_match = (
                Assignment.avatar_id.is_(None)
                if avatar_id is None
                else Assignment.avatar_id == avatar_id
            )
            conditions.append(
                and_(Assignment.type == type_, Assignment.channel_id == channel_id, avatar_match)
            )
        return select(Assignment.type, Assignment.channel_id, Assignment.avatar_id).where(
            Assignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            Assignment.is_deleted == False,  # noqa: E712
            or_(*conditions),
        )

    def _remember(self, keys: Iterable[DedupeKey]) -> None:
        ttl_ms = self.config.dedupe_ttl_ms
        if ttl_ms <= 0:
            return
        expires_at = self.clock() + timedelta(milliseconds=ttl_ms)
        for key in keys:
            self._recent_keys[key] = expires_at

    def _expire_recent_keys(self) -> None:
        now = self.clock()
        for key in [k for k, expires_at in self._recent_keys.items() if expires_at <= now]:
            del self._recent_keys[key]
