"""Chat store collaborator: persisted history and escalation flags."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol

from .errors import MessageNotFoundError, SessionNotFoundError
from .models import Message, utcnow


@dataclass
class ChatRecord:
    session_id: str
    messages: list[Message] = field(default_factory=list)
    escalation_requested: bool = False
    escalation_reason: str | None = None
    assigned_at: datetime | None = None
    assigned_operator_id: str | None = None
    assigned_operator_name: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


class ChatStore(Protocol):
    """Persistence abstraction used by :class:`~handoff.relay.SessionRelay`."""

    def get_chat(self, session_id: str) -> ChatRecord | None: ...

    def ensure_chat(self, session_id: str) -> ChatRecord: ...

    def mark_escalated(self, session_id: str, reason: str | None) -> ChatRecord: ...

    def assign_operator(
        self,
        session_id: str,
        operator_id: str,
        at: datetime,
        operator_name: str | None = None,
    ) -> ChatRecord: ...

    def add_message(self, session_id: str, message: Message) -> Message: ...

    def update_message(
        self, session_id: str, message_id: str, content: str, updated_at: datetime
    ) -> Message: ...


class InMemoryChatStore(ChatStore):
    def __init__(self) -> None:
        self._chats: dict[str, ChatRecord] = {}

    def get_chat(self, session_id: str) -> ChatRecord | None:
        record = self._chats.get(session_id)
        if record is None:
            return None
        return replace(record, messages=list(record.messages))

    def ensure_chat(self, session_id: str) -> ChatRecord:
        if session_id not in self._chats:
            self._chats[session_id] = ChatRecord(session_id=session_id)
        return self.get_chat(session_id)

    def mark_escalated(self, session_id: str, reason: str | None) -> ChatRecord:
        record = self._require(session_id)
        record.escalation_requested = True
        if reason:
            record.escalation_reason = reason
        record.updated_at = utcnow()
        return self.get_chat(session_id)

    def assign_operator(
        self,
        session_id: str,
        operator_id: str,
        at: datetime,
        operator_name: str | None = None,
    ) -> ChatRecord:
        record = self._require(session_id)
        record.assigned_operator_id = operator_id
        record.assigned_operator_name = operator_name
        record.assigned_at = at
        record.updated_at = utcnow()
        return self.get_chat(session_id)

    def add_message(self, session_id: str, message: Message) -> Message:
        record = self._require(session_id)
        record.messages.append(message)
        record.updated_at = utcnow()
        return message

    def update_message(
        self, session_id: str, message_id: str, content: str, updated_at: datetime
    ) -> Message:
        record = self._require(session_id)
        for index, message in enumerate(record.messages):
            if message.id == message_id:
                metadata = dict(message.metadata)
                metadata["updated_at"] = updated_at.isoformat()
                updated = replace(message, content=content, metadata=metadata)
                record.messages[index] = updated
                record.updated_at = utcnow()
                return updated
        raise MessageNotFoundError(f"Message {message_id} not found")

    def _require(self, session_id: str) -> ChatRecord:
        record = self._chats.get(session_id)
        if record is None:
            raise SessionNotFoundError(f"Chat {session_id} not found")
        return record
