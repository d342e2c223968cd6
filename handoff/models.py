"""Domain models shared by the session controller, reconciler and transports."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import InvalidTransitionError

OPTIMISTIC_PREFIX = "optimistic_"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    END_USER = "end_user"
    ASSISTANT = "assistant"
    OPERATOR = "operator"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """Resolve ``value`` to a role, accepting the wire aliases.

        The relay and older clients send ``USER``/``AGENT`` style names, so
        lookups are case-insensitive and ``user``/``agent`` map onto
        :attr:`END_USER` and :attr:`OPERATOR`.
        """

        if isinstance(value, Role):
            return value
        normalized = str(value).strip().lower()
        alias = _ROLE_ALIASES.get(normalized, normalized)
        try:
            return cls(alias)
        except ValueError as exc:
            raise ValueError(f"Unknown message role '{value}'") from exc


_ROLE_ALIASES = {
    "user": "end_user",
    "customer": "end_user",
    "agent": "operator",
    "human_agent": "operator",
}


class SessionMode(str, enum.Enum):
    AI_ONLY = "ai_only"
    ESCALATION_SUGGESTED = "escalation_suggested"
    CONNECTING = "connecting"
    LIVE = "live"

    @property
    def rank(self) -> int:
        return _MODE_ORDER.index(self)


_MODE_ORDER = [
    SessionMode.AI_ONLY,
    SessionMode.ESCALATION_SUGGESTED,
    SessionMode.CONNECTING,
    SessionMode.LIVE,
]

REALTIME_MODES = frozenset({SessionMode.CONNECTING, SessionMode.LIVE})


@dataclass(frozen=True)
class Message:
    """A single chat message as seen by every viewer of a session."""

    id: str
    role: Role
    content: str
    created_at: datetime = field(default_factory=utcnow)
    sender_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(OPTIMISTIC_PREFIX)

    def to_history(self) -> dict[str, Any]:
        """Serialise the message for a generation request."""

        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.created_at.isoformat(),
        }


@dataclass
class Session:
    """Explicit state of one conversation.

    ``mode`` only ever moves forward; :meth:`rollback_to_suggested` is the
    single sanctioned exception, used when operator routing fails.
    """

    id: str
    mode: SessionMode = SessionMode.AI_ONLY
    assigned_operator_id: str | None = None
    escalation_reason: str | None = None
    assigned_at: datetime | None = None

    @classmethod
    def new(cls, session_id: str) -> "Session":
        return cls(id=session_id)

    def advance(self, mode: SessionMode) -> None:
        if mode.rank < self.mode.rank:
            raise InvalidTransitionError(
                f"Session {self.id} cannot move from {self.mode.value} to {mode.value}"
            )
        self.mode = mode

    def rollback_to_suggested(self) -> None:
        if self.mode is not SessionMode.CONNECTING:
            raise InvalidTransitionError(
                f"Session {self.id} can only roll back while connecting"
            )
        self.mode = SessionMode.ESCALATION_SUGGESTED

    def stamp_assignment(self, operator_id: str | None, at: datetime) -> None:
        if self.assigned_at is None:
            self.assigned_at = at
        if operator_id and not self.assigned_operator_id:
            self.assigned_operator_id = operator_id


@dataclass(frozen=True)
class TerminalMetadata:
    escalation_requested: bool = False
    escalation_reason: str | None = None
    sources: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class StreamChunk:
    """Incremental piece of a generated response."""

    delta_content: str
    is_complete: bool = False
    terminal_metadata: TerminalMetadata | None = None

    def __post_init__(self) -> None:
        if self.terminal_metadata is not None and not self.is_complete:
            raise ValueError("terminal metadata is only valid on a completing chunk")


class StreamStatus(str, enum.Enum):
    COMPLETE = "complete"
    TRUNCATED = "truncated"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamResult:
    content: str
    status: StreamStatus
    terminal_metadata: TerminalMetadata | None = None
    chat_id: str | None = None
    error: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.status is StreamStatus.COMPLETE

    @property
    def truncated(self) -> bool:
        return self.status is StreamStatus.TRUNCATED


@dataclass(frozen=True)
class DetectionResult:
    clean_content: str
    escalation_requested: bool
    escalation_reason: str | None = None


@dataclass(frozen=True)
class OperatorJoined:
    operator_id: str
    operator_name: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class MessageUpdate:
    id: str
    content: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class EscalationNotice:
    """Payload handed to the operator-routing collaborator."""

    session_id: str
    reason: str
    messages: list[Message] = field(default_factory=list)
    requested_at: datetime = field(default_factory=utcnow)
