"""Tests for RateLimitService."""

import pytest

from avatarworld.services.rate_limit_service import RateLimitService


@pytest.fixture
def limiter(db, clock):
    return RateLimitService(db, max_per_hour=2, clock=clock)


class TestRateLimitService:
    """Sliding one-hour window."""

    async def test_allows_until_budget_used(self, limiter):
        """Requests are allowed until the hourly budget is spent."""
        assert await limiter.is_allowed("veo") is True
        await limiter.record_request("veo", "job-1")
        assert await limiter.get_remaining("veo") == 1
        await limiter.record_request("veo", "job-2")

        assert await limiter.is_allowed("veo") is False
        assert await limiter.get_remaining("veo") == 0

    async def test_resources_are_independent(self, limiter):
        """Budgets are tracked per resource key."""
        await limiter.record_request("veo")
        await limiter.record_request("veo")

        assert await limiter.is_allowed("other") is True

    async def test_window_slides(self, limiter, clock):
        """Events older than an hour stop counting."""
        await limiter.record_request("veo")
        await limiter.record_request("veo")
        clock.advance(minutes=61)

        assert await limiter.is_allowed("veo") is True

    async def test_cleanup_soft_deletes_old_events(self, limiter, clock):
        """Old events are soft-deleted and no longer counted."""
        await limiter.record_request("veo")
        clock.advance(days=8)
        await limiter.cleanup_old_events(days=7)

        assert await limiter.get_remaining("veo") == 2
