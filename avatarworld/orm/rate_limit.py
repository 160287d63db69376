"""RateLimitEvent model for tracking rate limit events."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase, UTCDateTime


class RateLimitEvent(SqlalchemyBase):
    """Track actions taken against a rate-limited resource."""

    __tablename__ = "rate_limit_events"
    __table_args__ = (
        Index("idx_rate_limit_resource_timestamp", "resource_key", "event_timestamp"),
        Index("idx_rate_limit_event_timestamp", "event_timestamp"),
    )

    resource_key: Mapped[str] = mapped_column(String, nullable=False, index=True)
    event_timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)
