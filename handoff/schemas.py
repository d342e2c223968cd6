"""Pydantic schemas for the wire formats exchanged with collaborators.

Field names follow the camelCase payloads produced by the realtime relay and
the generation backend; Python code reads and writes them through snake_case
attributes (``populate_by_name``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .models import Message, MessageUpdate, OperatorJoined, Role, utcnow


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Sender(WireModel):
    id: str = "anonymous"
    name: str = "Customer"


class MessageEvent(WireModel):
    """``message`` event: a confirmed message broadcast to every viewer."""

    id: str
    role: str
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    sender: Sender = Field(default_factory=Sender)

    def to_message(self) -> Message:
        return Message(
            id=self.id,
            role=Role.parse(self.role),
            content=self.content,
            created_at=self.timestamp,
            sender_id=self.sender.id,
            metadata={"sender_name": self.sender.name},
        )

    @classmethod
    def from_message(cls, message: Message, sender_name: str | None = None) -> "MessageEvent":
        name = sender_name or message.metadata.get("sender_name") or _default_sender_name(
            message.role
        )
        return cls(
            id=message.id,
            role=message.role.value,
            content=message.content,
            timestamp=message.created_at,
            sender=Sender(id=message.sender_id or "anonymous", name=name),
        )


def _default_sender_name(role: Role) -> str:
    if role is Role.OPERATOR:
        return "Support Agent"
    if role is Role.ASSISTANT:
        return "Assistant"
    if role is Role.SYSTEM:
        return "System"
    return "Customer"


class OperatorJoinedEvent(WireModel):
    agent_id: str = Field(alias="agentId")
    agent_name: str = Field("Support Agent", alias="agentName")
    timestamp: datetime = Field(default_factory=utcnow)

    def to_domain(self) -> OperatorJoined:
        return OperatorJoined(
            operator_id=self.agent_id,
            operator_name=self.agent_name,
            timestamp=self.timestamp,
        )


class MessageUpdatedEvent(WireModel):
    id: str
    content: str
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    def to_domain(self) -> MessageUpdate:
        return MessageUpdate(id=self.id, content=self.content, updated_at=self.updated_at)


class TypingEvent(WireModel):
    user_id: str = Field(alias="userId")
    is_typing: bool = Field(alias="isTyping")


class TransportEnvelope(WireModel):
    """Outer frame shared by the local bus and the websocket relay."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class StreamPayload(WireModel):
    """JSON body carried by one ``data:`` record of a generation stream."""

    content: str | None = None
    chat_id: str | None = Field(None, alias="chatId")
    is_complete: bool = Field(False, alias="isComplete")
    escalation_requested: bool = Field(False, alias="escalationRequested")
    escalation_reason: str | None = Field(None, alias="escalationReason")
    sources: list[Any] | None = None
    error: str | None = None


class HistoryMessage(WireModel):
    """Message as stored by the chat store collaborator."""

    id: str
    role: str
    content: str
    created_at: datetime = Field(alias="createdAt")
    sender_id: str | None = Field(None, alias="senderId")
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> Message:
        return Message(
            id=self.id,
            role=Role.parse(self.role),
            content=self.content,
            created_at=self.created_at,
            sender_id=self.sender_id,
            metadata=dict(self.metadata),
        )

    @classmethod
    def from_message(cls, message: Message) -> "HistoryMessage":
        return cls(
            id=message.id,
            role=message.role.value,
            content=message.content,
            created_at=message.created_at,
            sender_id=message.sender_id,
            metadata=dict(message.metadata),
        )


class SessionResume(WireModel):
    """Payload consumed once when a session is loaded from the chat store."""

    messages: list[HistoryMessage] = Field(default_factory=list)
    escalation_requested: bool = Field(False, alias="escalationRequested")
    escalation_reason: str | None = Field(None, alias="escalationReason")
    assigned_at: datetime | None = Field(None, alias="assignedAt")
    assigned_operator_id: str | None = Field(None, alias="assignedOperatorId")


class EscalationRequest(WireModel):
    session_id: str | None = Field(None, alias="sessionId")
    reason: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: datetime | None = None


class EscalationResponse(WireModel):
    success: bool
    message: str
    escalation: dict[str, Any] = Field(default_factory=dict)


class AssignRequest(WireModel):
    operator_id: str = Field(alias="operatorId")
    operator_name: str | None = Field(None, alias="operatorName")


class AssignResponse(WireModel):
    success: bool
    message: str
    assigned_operator_id: str = Field(alias="assignedOperatorId")
    assigned_at: datetime = Field(alias="assignedAt")


class SendMessageRequest(WireModel):
    content: str
    role: str
    sender_id: str | None = Field(None, alias="senderId")
    sender_name: str | None = Field(None, alias="senderName")


class UpdateMessageRequest(WireModel):
    content: str
