from typing import Optional


class DomainError(Exception):
    """Base domain error with a user-facing message."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class PermissionDenied(DomainError):
    """Raised when the actor's role may not perform the action."""


class NotFound(DomainError):
    """Raised when a required entity is missing."""


class ValidationError(DomainError):
    """Raised when a submit payload is malformed."""


class InvalidTransition(DomainError):
    """Raised when the requested transition is not legal from the current state."""


class Stale(DomainError):
    """Raised when a concurrent actor transitioned the record first.

    ``current`` holds the record as re-fetched after the failed write.
    """

    def __init__(self, message: str, current: Optional[object] = None) -> None:
        super().__init__(message)
        self.current = current


class StoreUnavailable(DomainError):
    """Raised when the approval store cannot be reached."""


class TransportDisconnected(DomainError):
    """Raised by a change-feed subscription when its link drops."""


class MalformedChangeEvent(ValueError):
    """Raised when a change-feed payload does not decode into a known event."""
