"""Collaborator interfaces for delivering messages and generating videos."""

import logging
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Deliver a short message to a channel, speaking as an avatar."""

    async def send(self, channel_id: str, text: str, avatar: Optional[dict[str, Any]] = None) -> None:
        ...


class VideoGenerator(Protocol):
    """Turn a video job into a list of clip URIs."""

    async def generate(self, job: Any) -> list[str]:
        ...


class LogNotifier:
    """Notifier that writes messages to the log instead of a chat service."""

    async def send(self, channel_id: str, text: str, avatar: Optional[dict[str, Any]] = None) -> None:
        name = (avatar or {}).get("name", "system")
        logger.info("[%s] %s: %s", channel_id, name, text)


class UnconfiguredVideoGenerator:
    """Placeholder generator; every job fails until a real one is injected."""

    async def generate(self, job: Any) -> list[str]:
        raise RuntimeError("No video generator configured")
