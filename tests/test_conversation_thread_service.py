"""Tests for ConversationThreadService."""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from avatarworld.config import ThreadConfig
from avatarworld.errors import InvalidArgumentError
from avatarworld.services.conversation_thread_service import (
    END_REASON_EXPIRED,
    END_REASON_MANUAL,
    END_REASON_TURN_LIMIT,
    ConversationThreadService,
    normalize_participant_id,
)


class Clock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, ms: int):
        self.now += timedelta(milliseconds=ms)


@dataclass
class Avatar:
    id: str
    name: str = "avatar"


class RecordingScheduler:
    def __init__(self):
        self.tasks = {}

    def add_task(self, name, callback, interval_ms):
        self.tasks[name] = (callback, interval_ms)


class TestNormalizeParticipantId:
    """Participant reference resolution."""

    def test_accepts_strings_ints_and_ids(self):
        """Strings, ints, mappings and objects with ids all resolve."""
        assert normalize_participant_id("a") == "a"
        assert normalize_participant_id(42) == "42"
        assert normalize_participant_id({"_id": "m"}) == "m"
        assert normalize_participant_id({"id": 7}) == "7"
        assert normalize_participant_id(Avatar(id="obj")) == "obj"

    def test_unresolvable_values(self):
        """Empty and id-less values resolve to None."""
        assert normalize_participant_id(None) is None
        assert normalize_participant_id("") is None
        assert normalize_participant_id(True) is None
        assert normalize_participant_id({"name": "nope"}) is None
        assert normalize_participant_id(object()) is None


class TestConversationThreadService:
    """Thread lifecycle behaviour."""

    def setup_method(self):
        """Set up test fixtures."""
        self.clock = Clock()
        self.config = ThreadConfig(ttl_ms=10_000, max_turns=6, extend_on_activity=True)
        self.service = ConversationThreadService(self.config, clock=self.clock)

    def test_creates_thread_and_tracks_participants(self):
        """A new thread is active and findable by participant."""
        thread = self.service.start_thread("chan1", [{"_id": "a"}, {"_id": "b"}], max_turns=4)

        assert thread.participants == {"a", "b"}
        assert thread.max_turns == 4
        assert thread.turn_count == 0
        assert thread.expires_at == self.clock.now + timedelta(milliseconds=10_000)
        assert self.service.get_active_threads("chan1") == [thread]
        assert self.service.is_in_active_thread("chan1", "a") is thread
        assert self.service.is_in_active_thread("chan1", "zzz") is None

    def test_requires_a_resolvable_participant(self):
        """Starting without any usable participant id is an error."""
        with pytest.raises(InvalidArgumentError):
            self.service.start_thread("chan1", [None, {"name": "x"}])
        with pytest.raises(InvalidArgumentError):
            self.service.start_thread("chan1", [])
        assert self.service.channel_ids == []

    def test_requires_channel_id(self):
        """An empty channel id is rejected."""
        with pytest.raises(InvalidArgumentError):
            self.service.start_thread("", ["a"])

    def test_reuses_thread_with_same_participants_and_mode(self):
        """Restarting an identical thread refreshes it instead of duplicating."""
        first = self.service.start_thread("chan2", ["x", "y"], mode="mention")
        first_expiry = first.expires_at
        self.clock.advance(1_000)
        second = self.service.start_thread("chan2", ["y", "x"], mode="mention")

        assert second.id == first.id
        assert second.expires_at >= first_expiry
        assert len(self.service.get_active_threads("chan2")) == 1

    def test_immediate_restart_keeps_id_and_expiry(self):
        """Back-to-back starts return the same thread with a non-decreasing expiry."""
        first = self.service.start_thread("c", ["a", "b"], mode="mention")
        expiry = first.expires_at
        second = self.service.start_thread("c", ["a", "b"], mode="mention")

        assert second.id == first.id
        assert second.expires_at >= expiry

    def test_different_mode_or_participants_create_new_thread(self):
        """Reuse needs exact participant set equality and matching mode."""
        base = self.service.start_thread("chan", ["a", "b"], mode="mention")
        other_mode = self.service.start_thread("chan", ["a", "b"], mode="ambient")
        superset = self.service.start_thread("chan", ["a", "b", "c"], mode="mention")

        assert len({base.id, other_mode.id, superset.id}) == 3
        assert len(self.service.get_active_threads("chan")) == 3

    def test_force_new_skips_reuse(self):
        """force_new always creates a separate thread."""
        first = self.service.start_thread("chan", ["a"])
        second = self.service.start_thread("chan", ["a"], force_new=True)

        assert first.id != second.id

    def test_turn_limit_ends_thread(self):
        """A thread with max_turns=2 disappears after the second turn."""
        thread = self.service.start_thread("chan3", [{"_id": "p"}, {"_id": "q"}], max_turns=2, duration_ms=500)

        self.service.record_turn("chan3", "p", thread.id)
        assert self.service.get_thread("chan3", thread.id).turn_count == 1

        ended = self.service.record_turn("chan3", "q", thread.id)
        assert self.service.get_thread("chan3", thread.id) is None
        assert ended.end_reason == END_REASON_TURN_LIMIT
        assert ended.ended_at == self.clock.now
        assert "chan3" not in self.service.channel_ids

    def test_record_turn_updates_speaker_and_extends_by_half_ttl(self):
        """Activity renews the thread for half of the default TTL."""
        thread = self.service.start_thread("chan", ["a", "b"])
        self.clock.advance(8_000)

        self.service.record_turn("chan", Avatar(id="b"), thread.id)

        assert thread.last_speaker_id == "b"
        assert thread.last_activity_at == self.clock.now
        assert thread.expires_at == self.clock.now + timedelta(milliseconds=5_000)

    def test_record_turn_without_extension(self):
        """With extension disabled the expiry is left alone."""
        service = ConversationThreadService(
            ThreadConfig(ttl_ms=10_000, extend_on_activity=False), clock=self.clock
        )
        thread = service.start_thread("chan", ["a"])
        expiry = thread.expires_at
        self.clock.advance(1_000)

        service.record_turn("chan", "a", thread.id)

        assert thread.expires_at == expiry

    def test_record_turn_on_expired_thread_ends_it(self):
        """A turn after expiry ends the thread instead of extending it."""
        thread = self.service.start_thread("chan", ["a", "b"], duration_ms=500)
        self.clock.advance(5_000)

        assert self.service.record_turn("chan", "a", thread.id) is None
        assert thread.turn_count == 0
        assert thread.end_reason == END_REASON_EXPIRED
        assert self.service.get_thread("chan", thread.id) is None
        assert self.service.get_active_threads("chan") == []

    def test_record_turn_unknown_thread(self):
        """Turns on unknown threads are ignored."""
        assert self.service.record_turn("chan", "a", "missing") is None

    def test_ttl_expiry_removes_quiet_threads(self):
        """A quiet thread is gone once its duration has passed."""
        self.service.start_thread("chan", ["a", "b"], duration_ms=500)
        self.clock.advance(499)
        assert len(self.service.get_active_threads("chan")) == 1

        self.clock.advance(2)
        assert self.service.get_active_threads("chan") == []
        assert self.service.channel_ids == []

    def test_ttl_expiry_with_real_clock(self):
        """With the wall clock, a 500 ms thread expires after waiting."""
        service = ConversationThreadService(ThreadConfig())
        service.start_thread("chan", ["a", "b"], duration_ms=500)
        assert len(service.get_active_threads("chan")) == 1

        time.sleep(0.6)

        assert service.get_active_threads("chan") == []

    def test_end_thread_drops_empty_channel(self):
        """Ending the last thread removes the channel entry."""
        thread = self.service.start_thread("chan", ["a"])

        assert self.service.end_thread("chan", thread.id) is True
        assert thread.end_reason == END_REASON_MANUAL
        assert self.service.channel_ids == []
        assert self.service.end_thread("chan", thread.id) is False

    def test_end_thread_keeps_other_threads(self):
        """Ending one thread leaves siblings in place."""
        keep = self.service.start_thread("chan", ["a"])
        drop = self.service.start_thread("chan", ["b"])

        self.service.end_thread("chan", drop.id, "done")

        assert self.service.get_active_threads("chan") == [keep]
        assert drop.end_reason == "done"

    def test_prune_expired_sweeps_all_channels(self):
        """Pruning keeps active threads and removes emptied channels."""
        self.service.start_thread("short", ["a"], duration_ms=1_000)
        long_thread = self.service.start_thread("long", ["b"], duration_ms=60_000)
        self.clock.advance(5_000)

        removed = self.service.prune_expired()

        assert removed == 1
        assert self.service.channel_ids == ["long"]
        assert self.service.get_thread("long", long_thread.id) is long_thread

    def test_prune_marks_end_reason(self):
        """Threads swept by TTL are marked expired."""
        thread = self.service.start_thread("chan", ["a"], duration_ms=1_000)
        self.service.prune_expired(self.clock.now + timedelta(seconds=2))

        assert thread.end_reason == END_REASON_EXPIRED

    def test_active_participants_excludes_speaker(self):
        """get_active_participants leaves out the excluded participant."""
        thread = self.service.start_thread("chan", ["a", "b", "c"])

        assert self.service.get_active_participants("chan", thread.id, "b") == ["a", "c"]
        assert self.service.get_active_participants("chan", "missing") == []

    def test_thread_options_are_kept(self):
        """Optional fields are stored on the thread."""
        thread = self.service.start_thread(
            "chan",
            ["a"],
            mode="ambient",
            proactive=True,
            metadata={"topic": "dice"},
            last_speaker_id=5,
            thread_id="fixed-id",
        )

        assert thread.id == "fixed-id"
        assert thread.mode == "ambient"
        assert thread.proactive is True
        assert thread.metadata == {"topic": "dice"}
        assert thread.last_speaker_id == "5"

    def test_register_adds_prune_task(self):
        """register schedules pruning at the configured interval."""
        scheduler = RecordingScheduler()
        self.service.register(scheduler)

        callback, interval = scheduler.tasks["conversation-thread-prune"]
        assert interval == self.config.cleanup_interval_ms
        assert callback == self.service.prune_expired

    def test_register_skips_when_disabled(self):
        """A zero cleanup interval disables the prune task."""
        scheduler = RecordingScheduler()
        service = ConversationThreadService(ThreadConfig(cleanup_interval_ms=0))
        service.register(scheduler)

        assert scheduler.tasks == {}

    def test_close_drops_state(self):
        """close forgets every thread."""
        self.service.start_thread("chan", ["a"])
        self.service.close()

        assert self.service.channel_ids == []
