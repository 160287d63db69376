"""Explicit result wrapper for best-effort store operations."""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

T = TypeVar("T")

# Errors treated as "store unavailable": logged and degraded, never raised.
TRANSIENT_STORE_ERRORS = (SQLAlchemyError, OSError)


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """Outcome of a queue operation.

    ``value`` always holds something usable by the caller. When the store
    failed, ``value`` is the neutral element (0, None, False) and ``error``
    carries the reason; callers treat that as "try again later".
    """

    value: T
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.error is not None

    @classmethod
    def ok(cls, value: T) -> "StoreResult[T]":
        return cls(value=value)

    @classmethod
    def neutral(cls, value: T, error: BaseException | str) -> "StoreResult[T]":
        return cls(value=value, error=str(error) or type(error).__name__)
