"""Exception types raised to callers."""


class AvatarWorldError(Exception):
    """Base class for avatarworld errors."""


class InvalidArgumentError(AvatarWorldError, ValueError):
    """A caller passed input that can never succeed (a programming error)."""
