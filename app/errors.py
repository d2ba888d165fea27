"""Exception hierarchy shared by the catalog client and the account store."""

from __future__ import annotations


class ReelFeedError(Exception):
    """Base class for errors surfaced to API callers."""


class UnauthenticatedError(ReelFeedError):
    """Raised when a mutating operation runs without a signed-in identity."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class NotFoundError(ReelFeedError):
    """Raised when an operation targets an entity that does not exist."""


class ConflictError(ReelFeedError):
    """Raised when a write would violate a uniqueness rule."""


class UpstreamUnavailableError(ReelFeedError):
    """Raised when the catalog API or the account store cannot be reached."""


class UpstreamTimeoutError(UpstreamUnavailableError):
    """Raised when an external call does not finish within its timeout."""


class InvalidInputError(ReelFeedError, ValueError):
    """Raised when a caller passes an argument the operation cannot accept."""
