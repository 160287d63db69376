"""Shared fixtures for the test suite."""

from datetime import datetime, timedelta, timezone

import pytest

from avatarworld.services.database import DatabaseService


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db(tmp_path):
    service = DatabaseService(tmp_path / "test.db")
    await service.initialize()
    yield service
    await service.close()
