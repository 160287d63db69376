"""Tests for ThreadStateService and ActivityService."""

from datetime import timedelta

import pytest

from avatarworld.config import ThreadStateConfig
from avatarworld.services.activity_service import ActivityService
from avatarworld.services.thread_state_service import ThreadStateService


@pytest.fixture
def activity(db, clock):
    return ActivityService(db, clock=clock)


@pytest.fixture
def states(db, clock):
    return ThreadStateService(db, ThreadStateConfig(staleness_ms=60_000), clock=clock)


async def post(activity, clock, channel_id, author_id, username=None, guild_id="g1"):
    clock.advance(seconds=1)
    return await activity.record_message(
        channel_id,
        author_id,
        author_username=username or f"user-{author_id}",
        message_id=f"m-{channel_id}-{clock.now.timestamp()}",
        guild_id=guild_id,
    )


class TestActivityService:
    """Message and activity ledger."""

    async def test_record_message_updates_activity(self, activity, states, clock):
        """Recording a message marks the channel active."""
        await post(activity, clock, "c1", "u1")

        channels = await states.get_active_channels(lookback_ms=60_000)

        assert [c.channel_id for c in channels] == ["c1"]
        assert channels[0].guild_id == "g1"
        assert channels[0].last_activity_ts == clock.now

    async def test_activity_never_moves_backwards(self, activity, states, clock):
        """A late message does not rewind the channel's last activity."""
        await post(activity, clock, "c1", "u1")
        latest = clock.now
        await activity.record_message("c1", "u2", timestamp=latest - timedelta(minutes=5))

        channels = await states.get_active_channels(lookback_ms=60_000)

        assert channels[0].last_activity_ts == latest

    async def test_recent_messages_newest_first(self, activity, clock):
        """get_recent_messages returns newest first."""
        await post(activity, clock, "c1", "u1")
        await post(activity, clock, "c1", "u2")

        messages = await activity.get_recent_messages("c1")

        assert [m.author_id for m in messages] == ["u2", "u1"]


class TestActiveChannels:
    """get_active_channels."""

    async def test_lookback_and_order(self, activity, states, clock):
        """Only recent channels are returned, most recent first, capped by limit."""
        await post(activity, clock, "old", "u1")
        clock.advance(minutes=30)
        await post(activity, clock, "mid", "u1")
        await post(activity, clock, "new", "u1")

        channels = await states.get_active_channels(lookback_ms=10 * 60_000)
        assert [c.channel_id for c in channels] == ["new", "mid"]

        limited = await states.get_active_channels(lookback_ms=60 * 60_000, limit=1)
        assert [c.channel_id for c in limited] == ["new"]


class TestComputeState:
    """compute_and_upsert_state."""

    async def test_participants_and_recent_authors(self, db, activity, clock):
        """Counts cover the full window; recent lists only the newest messages."""
        states = ThreadStateService(
            db, ThreadStateConfig(message_window=100, recent_window=3), clock=clock
        )
        for author in ["a", "a", "b", "c", "c", "c"]:
            await post(activity, clock, "c1", author, username=f"name-{author}")
        last = await post(activity, clock, "c1", "d", username="name-d")

        snapshot = await states.compute_and_upsert_state("c1", "g1")

        assert snapshot.participants == {"a": 2, "b": 1, "c": 3, "d": 1}
        assert snapshot.participants_count == 4
        assert snapshot.recent_author_ids == ["d", "c"]
        assert snapshot.recent_authors == ["name-d", "name-c"]
        assert snapshot.last_message_id == last.message_id
        assert snapshot.last_activity_ts == last.timestamp
        assert snapshot.updated_at == clock.now
        assert snapshot.created_at == clock.now

    async def test_message_window_limits_counts(self, db, activity, clock):
        """Messages beyond the window are ignored."""
        states = ThreadStateService(db, ThreadStateConfig(message_window=2), clock=clock)
        await post(activity, clock, "c1", "old")
        await post(activity, clock, "c1", "x")
        await post(activity, clock, "c1", "y")

        snapshot = await states.compute_and_upsert_state("c1")

        assert snapshot.participants == {"x": 1, "y": 1}

    async def test_created_at_set_only_on_insert(self, states, activity, clock):
        """Re-computing keeps the original created_at."""
        await post(activity, clock, "c1", "u1")
        first = await states.compute_and_upsert_state("c1", "g1")
        created = first.created_at

        clock.advance(minutes=5)
        await post(activity, clock, "c1", "u2")
        second = await states.compute_and_upsert_state("c1", "g1")

        assert second.created_at == created
        assert second.updated_at == clock.now
        cached = await states.get_cached_state("c1")
        assert cached.created_at == created
        assert cached.participants == {"u1": 1, "u2": 1}

    async def test_empty_channel_uses_now(self, states, clock):
        """A channel with no messages still gets a snapshot."""
        snapshot = await states.compute_and_upsert_state("quiet")

        assert snapshot.last_activity_ts == clock.now
        assert snapshot.last_message_id is None
        assert snapshot.participants == {}

    async def test_failure_returns_none(self, states, db, monkeypatch):
        """A failing computation is logged and returns None."""

        def broken():
            raise RuntimeError("store down")

        monkeypatch.setattr(db, "session", broken)

        assert await states.compute_and_upsert_state("c1") is None


class TestActiveThreadStates:
    """get_active_thread_states."""

    async def test_uses_cache_within_staleness(self, states, activity, clock, monkeypatch):
        """Fresh cached snapshots are not recomputed."""
        await post(activity, clock, "c1", "u1")
        await states.compute_and_upsert_state("c1", "g1")
        clock.advance(seconds=30)

        async def fail_compute(channel_id, guild_id=None):
            raise AssertionError("should use cache")

        monkeypatch.setattr(states, "compute_and_upsert_state", fail_compute)
        result = await states.get_active_thread_states(lookback_ms=15 * 60_000)

        assert [s.channel_id for s in result] == ["c1"]

    async def test_recomputes_when_stale(self, states, activity, clock):
        """Snapshots older than the staleness window are rebuilt."""
        await post(activity, clock, "c1", "u1")
        await states.compute_and_upsert_state("c1", "g1")
        clock.advance(seconds=61)
        await post(activity, clock, "c1", "u2")

        result = await states.get_active_thread_states(lookback_ms=15 * 60_000)

        assert result[0].participants == {"u1": 1, "u2": 1}
        assert result[0].updated_at == clock.now

    async def test_sorted_by_last_activity(self, states, activity, clock):
        """Results come back most recently active first."""
        await post(activity, clock, "a", "u1")
        await post(activity, clock, "b", "u1")
        await post(activity, clock, "c", "u1")

        result = await states.get_active_thread_states(lookback_ms=15 * 60_000, limit=10)

        assert [s.channel_id for s in result] == ["c", "b", "a"]

    async def test_one_bad_channel_does_not_abort_batch(self, states, activity, clock, monkeypatch):
        """A channel whose computation raises is skipped."""
        await post(activity, clock, "good-1", "u1")
        await post(activity, clock, "bad", "u1")
        await post(activity, clock, "good-2", "u1")

        original = states.compute_and_upsert_state

        async def flaky(channel_id, guild_id=None):
            if channel_id == "bad":
                raise RuntimeError("corrupt channel")
            return await original(channel_id, guild_id)

        monkeypatch.setattr(states, "compute_and_upsert_state", flaky)
        result = await states.get_active_thread_states(lookback_ms=15 * 60_000)

        assert [s.channel_id for s in result] == ["good-2", "good-1"]
