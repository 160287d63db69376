"""In-memory tracker for short multi-turn conversations between avatars.

A thread groups a fixed set of participants in one channel for a bounded
number of turns and a bounded lifetime. Nothing here is persisted; threads
are rebuilt from fresh mentions after a restart.

The tracker is synchronous and has no locking. Use it from a single event
loop; every method completes without yielding, so callers never observe a
half-applied change.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from ..config import ThreadConfig
from ..errors import InvalidArgumentError
from ..orm.base import utcnow

logger = logging.getLogger(__name__)

DEFAULT_THREAD_MODE = "mention"

END_REASON_MANUAL = "manual"
END_REASON_EXPIRED = "expired"
END_REASON_TURN_LIMIT = "turn_limit_reached"


def normalize_participant_id(participant: Any) -> Optional[str]:
    """Resolve a participant reference to its string id.

    Accepts a non-empty string, an integer, a mapping with ``_id``/``id``, or
    an object with an ``_id``/``id`` attribute. Returns None when nothing
    usable is found.
    """
    if participant is None or isinstance(participant, bool):
        return None
    if isinstance(participant, str):
        return participant or None
    if isinstance(participant, int):
        return str(participant)
    for key in ("_id", "id"):
        if isinstance(participant, dict):
            value = participant.get(key)
        else:
            value = getattr(participant, key, None)
        if value is not None and value != "":
            return str(value)
    return None


def _end_reason(thread: "ConversationThread") -> str:
    if thread.max_turns and thread.turn_count >= thread.max_turns:
        return END_REASON_TURN_LIMIT
    return END_REASON_EXPIRED


@dataclass
class ConversationThread:
    """A bounded exchange among a fixed participant set in one channel."""

    id: str
    channel_id: str
    participants: set[str]
    started_at: datetime
    last_activity_at: datetime
    expires_at: Optional[datetime]
    max_turns: int
    turn_count: int = 0
    mode: str = DEFAULT_THREAD_MODE
    proactive: bool = False
    last_speaker_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        if self.max_turns and self.turn_count >= self.max_turns:
            return False
        return self.expires_at is None or now < self.expires_at


class ConversationThreadService:
    """Per-channel index of active conversation threads."""

    def __init__(
        self,
        config: Optional[ThreadConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or ThreadConfig()
        self.clock = clock
        self._threads: dict[str, list[ConversationThread]] = {}

    @property
    def default_ttl(self) -> timedelta:
        return timedelta(milliseconds=self.config.ttl_ms)

    def register(self, scheduler) -> None:
        """Schedule the periodic prune pass on ``scheduler``."""
        interval_ms = self.config.cleanup_interval_ms
        if interval_ms <= 0:
            logger.info("Conversation thread pruning disabled")
            return
        scheduler.add_task("conversation-thread-prune", self.prune_expired, interval_ms)

    def close(self) -> None:
        """Drop every tracked thread."""
        self._threads.clear()

    def start_thread(
        self,
        channel_id: str,
        participants: Iterable[Any],
        *,
        mode: str = DEFAULT_THREAD_MODE,
        duration_ms: Optional[int] = None,
        max_turns: Optional[int] = None,
        force_new: bool = False,
        proactive: bool = False,
        metadata: Optional[dict[str, Any]] = None,
        last_speaker_id: Any = None,
        thread_id: Optional[str] = None,
    ) -> ConversationThread:
        """Start a thread, or refresh the active one with the same people.

        Raises:
            InvalidArgumentError: If channel_id is empty or no participant
                resolves to an id.
        """
        if not channel_id:
            raise InvalidArgumentError("channel_id is required to start a thread")

        ids = {pid for pid in map(normalize_participant_id, participants) if pid}
        if not ids:
            raise InvalidArgumentError("At least one participant is required to start a thread")

        now = self.clock()
        mode = mode or DEFAULT_THREAD_MODE
        duration = timedelta(milliseconds=duration_ms) if duration_ms else self.default_ttl
        max_turns = max_turns or self.config.max_turns

        threads = self._threads.setdefault(channel_id, [])

        if not force_new:
            for existing in threads:
                if existing.mode == mode and existing.participants == ids and existing.is_active(now):
                    existing.expires_at = now + duration
                    existing.last_activity_at = now
                    logger.debug("Refreshed thread %s in channel %s", existing.id, channel_id)
                    return existing

        thread = ConversationThread(
            id=thread_id or str(uuid4()),
            channel_id=channel_id,
            participants=set(ids),
            started_at=now,
            last_activity_at=now,
            expires_at=now + duration,
            max_turns=max_turns,
            mode=mode,
            proactive=bool(proactive),
            metadata=dict(metadata or {}),
            last_speaker_id=normalize_participant_id(last_speaker_id),
        )
        threads.append(thread)
        logger.debug(
            "Started %s thread %s in channel %s with %d participant(s)",
            mode,
            thread.id,
            channel_id,
            len(ids),
        )
        return thread

    def get_thread(self, channel_id: str, thread_id: str) -> Optional[ConversationThread]:
        for thread in self._threads.get(channel_id, ()):
            if thread.id == thread_id:
                return thread
        return None

    def get_active_threads(self, channel_id: str) -> list[ConversationThread]:
        """Active threads in a channel. Prunes every channel as a side effect."""
        now = self.clock()
        self.prune_expired(now)
        return [t for t in self._threads.get(channel_id, ()) if t.is_active(now)]

    def is_in_active_thread(self, channel_id: str, participant: Any) -> Optional[ConversationThread]:
        """First active thread in the channel that includes ``participant``."""
        participant_id = normalize_participant_id(participant)
        if participant_id is None:
            return None
        for thread in self.get_active_threads(channel_id):
            if participant_id in thread.participants:
                return thread
        return None

    def get_active_participants(
        self, channel_id: str, thread_id: str, exclude: Any = None
    ) -> list[str]:
        thread = self.get_thread(channel_id, thread_id)
        if thread is None:
            return []
        excluded = normalize_participant_id(exclude)
        return sorted(pid for pid in thread.participants if pid != excluded)

    def record_turn(
        self, channel_id: str, participant: Any, thread_id: str
    ) -> Optional[ConversationThread]:
        """Count a turn and end the thread if that used up its budget.

        Turns on threads that have already expired end them and return None.

        With extend-on-activity enabled, a turn renews the thread for half
        the default TTL.
        """
        thread = self.get_thread(channel_id, thread_id)
        if thread is None:
            return None

        now = self.clock()
        if not thread.is_active(now):
            # Expired but not yet pruned; a late turn must not revive it
            self.end_thread(channel_id, thread_id, _end_reason(thread))
            return None

        thread.turn_count += 1
        thread.last_activity_at = now
        thread.last_speaker_id = normalize_participant_id(participant)

        if self.config.extend_on_activity and thread.expires_at is not None:
            extension = self.default_ttl / 2
            thread.expires_at = now + (extension or self.default_ttl)

        if not thread.is_active(now):
            self.end_thread(channel_id, thread_id, _end_reason(thread))
        return thread

    def end_thread(self, channel_id: str, thread_id: str, reason: str = END_REASON_MANUAL) -> bool:
        threads = self._threads.get(channel_id)
        if not threads:
            return False
        for index, thread in enumerate(threads):
            if thread.id == thread_id:
                break
        else:
            return False

        removed = threads.pop(index)
        removed.ended_at = self.clock()
        removed.end_reason = reason
        if not threads:
            del self._threads[channel_id]
        logger.debug("Ended thread %s in channel %s (%s)", thread_id, channel_id, reason)
        return True

    def prune_expired(self, now: Optional[datetime] = None) -> int:
        """Drop inactive threads and empty channels.

        Returns:
            Number of threads removed.
        """
        now = now or self.clock()
        removed = 0
        for channel_id in list(self._threads):
            active = []
            for thread in self._threads[channel_id]:
                if thread.is_active(now):
                    active.append(thread)
                    continue
                thread.ended_at = now
                thread.end_reason = _end_reason(thread)
                removed += 1
            if active:
                self._threads[channel_id] = active
            else:
                del self._threads[channel_id]
        if removed:
            logger.debug("Pruned %d expired conversation thread(s)", removed)
        return removed

    @property
    def channel_ids(self) -> list[str]:
        """Channels that currently hold at least one thread."""
        return list(self._threads)
