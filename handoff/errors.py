"""Exception types raised by the handoff core and its collaborators."""

from __future__ import annotations


class HandoffError(RuntimeError):
    """Base class for all errors raised by this package."""


class GenerationError(HandoffError):
    """Raised when the generation backend refuses or fails a request."""


class StreamInterruptedError(GenerationError):
    """Raised when a generation stream drops before its terminal record."""


class EscalationRoutingError(HandoffError):
    """Raised when the operator-routing collaborator did not acknowledge."""

    retryable = True

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class InvalidTransitionError(HandoffError):
    """Raised when a session mode change would move backwards."""


class DuplicatePendingMessageError(HandoffError):
    """Raised when an identical message is still awaiting confirmation."""


class SessionNotFoundError(HandoffError):
    """Raised when a session could not be located in the chat store."""


class MessageNotFoundError(HandoffError):
    """Raised when a message could not be located in a session."""


class OperatorConflictError(HandoffError):
    """Raised when a session is already assigned to another operator."""

    def __init__(self, message: str, *, assigned_operator_id: str | None = None) -> None:
        super().__init__(message)
        self.assigned_operator_id = assigned_operator_id


class SessionNotEscalatedError(HandoffError):
    """Raised when a realtime operation targets a session still handled by AI."""


class MessageNotEditableError(HandoffError):
    """Raised when an edit targets a message its author role may not change."""
