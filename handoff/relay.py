"""Relay service: confirms, persists and fans out realtime session events.

The relay is the server side of both transports. REST routes and websocket
frames call into :class:`SessionRelay`, which validates the operation against
the chat store, mints ids and timestamps, and publishes the confirmed event on
the session's bus topic. Every websocket viewer of the session is subscribed
to that topic.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from fastapi.requests import HTTPConnection
from pydantic import ValidationError

from .bus import ChannelBus
from .errors import (
    HandoffError,
    MessageNotEditableError,
    MessageNotFoundError,
    OperatorConflictError,
    SessionNotEscalatedError,
    SessionNotFoundError,
)
from .models import Message, Role, utcnow
from .routing import ESCALATIONS_TOPIC
from .schemas import (
    EscalationRequest,
    HistoryMessage,
    MessageEvent,
    MessageUpdatedEvent,
    OperatorJoinedEvent,
    SessionResume,
    TransportEnvelope,
    TypingEvent,
)
from .store import ChatRecord, ChatStore
from .transports.base import session_topic

logger = logging.getLogger(__name__)

SENDER_ROLES = frozenset({Role.END_USER, Role.OPERATOR})


def _event(event_type: str, model: Any) -> dict[str, Any]:
    return {"type": event_type, "data": model.model_dump(mode="json", by_alias=True)}


def error_frame(message: str) -> dict[str, Any]:
    return {"type": "error", "error": message, "data": {}}


class SessionRelay:
    def __init__(
        self,
        bus: ChannelBus,
        store: ChatStore,
        *,
        max_message_length: int = 5000,
    ) -> None:
        self.bus = bus
        self.store = store
        self.max_message_length = max_message_length

    # ------------------------------------------------------------------
    # Escalations

    def escalate(self, request: EscalationRequest) -> dict[str, Any]:
        if not request.session_id:
            raise ValueError("sessionId is required")
        session_id = request.session_id
        self.store.ensure_chat(session_id)
        record = self.store.mark_escalated(session_id, request.reason)
        escalation = {
            "sessionId": session_id,
            "reason": record.escalation_reason,
            "messageCount": len(request.messages),
            "timestamp": (request.timestamp or utcnow()).isoformat(),
        }
        listeners = self.bus.publish(ESCALATIONS_TOPIC, escalation)
        logger.info(
            "Escalation requested for %s (%s); %d operator console(s) notified",
            session_id,
            record.escalation_reason,
            listeners,
        )
        return escalation

    # ------------------------------------------------------------------
    # Sessions

    def get_record(self, session_id: str) -> ChatRecord:
        record = self.store.get_chat(session_id)
        if record is None:
            raise SessionNotFoundError(f"Chat {session_id} not found")
        return record

    def resume(self, session_id: str) -> SessionResume:
        record = self.get_record(session_id)
        return SessionResume(
            messages=[HistoryMessage.from_message(m) for m in record.messages],
            escalation_requested=record.escalation_requested,
            escalation_reason=record.escalation_reason,
            assigned_at=record.assigned_at,
            assigned_operator_id=record.assigned_operator_id,
        )

    def connected_frame(self, session_id: str) -> dict[str, Any]:
        """Greeting sent to a new viewer, carrying any existing assignment.

        A viewer that connects after the operator joined (or reconnects) learns
        about the assignment from this frame instead of the missed event.
        """

        data: dict[str, Any] = {"sessionId": session_id}
        record = self.store.get_chat(session_id)
        if record is not None and record.assigned_at is not None:
            joined = OperatorJoinedEvent(
                agent_id=record.assigned_operator_id,
                agent_name=record.assigned_operator_name or "Support Agent",
                timestamp=record.assigned_at,
            ).model_dump(mode="json", by_alias=True)
            data["agentId"] = joined["agentId"]
            data["agentName"] = joined["agentName"]
            data["assignedAt"] = joined["timestamp"]
        return {"type": "connected", "data": data}

    def assign(
        self,
        session_id: str,
        operator_id: str,
        operator_name: str | None = None,
    ) -> tuple[ChatRecord, bool]:
        """Assign an operator; returns the record and whether it changed.

        Re-assigning the same operator is a no-op; another operator gets
        :class:`OperatorConflictError`.
        """

        if not operator_id or not operator_id.strip():
            raise ValueError("operatorId is required")
        record = self.get_record(session_id)
        if not record.escalation_requested:
            raise SessionNotEscalatedError(f"Chat {session_id} is not escalated")
        if record.assigned_operator_id:
            if record.assigned_operator_id == operator_id:
                return record, False
            raise OperatorConflictError(
                "Chat is already assigned to another agent",
                assigned_operator_id=record.assigned_operator_id,
            )
        operator_name = operator_name or "Support Agent"
        record = self.store.assign_operator(
            session_id, operator_id, utcnow(), operator_name=operator_name
        )
        event = OperatorJoinedEvent(
            agent_id=operator_id,
            agent_name=operator_name,
            timestamp=record.assigned_at,
        )
        self.bus.publish(session_topic(session_id), _event("operator_joined", event))
        logger.info("Operator %s assigned to %s", operator_id, session_id)
        return record, True

    # ------------------------------------------------------------------
    # Messages

    def post_message(
        self,
        session_id: str,
        content: str,
        role: Role | str,
        *,
        sender_id: str | None = None,
        sender_name: str | None = None,
    ) -> Message:
        text = (content or "").strip()
        if not text:
            raise ValueError("Message content is required")
        if len(text) > self.max_message_length:
            raise ValueError("Message too long")
        parsed_role = Role.parse(role)
        if parsed_role not in SENDER_ROLES:
            raise ValueError(f"Invalid role '{role}'")
        record = self.get_record(session_id)
        if not record.escalation_requested:
            raise SessionNotEscalatedError(
                "Chat is not escalated. Real-time messaging is only available for escalated chats."
            )
        message = Message(
            id=f"msg_{uuid.uuid4().hex}",
            role=parsed_role,
            content=text,
            sender_id=sender_id or "anonymous",
        )
        event = MessageEvent.from_message(message, sender_name=sender_name)
        message = event.to_message()
        self.store.add_message(session_id, message)
        self.bus.publish(session_topic(session_id), _event("message", event))
        return message

    def update_message(self, session_id: str, message_id: str, content: str) -> Message:
        text = (content or "").strip()
        if not text:
            raise ValueError("Message content is required")
        record = self.get_record(session_id)
        current = next((m for m in record.messages if m.id == message_id), None)
        if current is None:
            raise MessageNotFoundError(f"Message {message_id} not found")
        if current.role is not Role.OPERATOR:
            raise MessageNotEditableError("Only agent messages can be edited")
        updated_at = utcnow()
        updated = self.store.update_message(session_id, message_id, text, updated_at)
        event = MessageUpdatedEvent(id=message_id, content=text, updated_at=updated_at)
        self.bus.publish(session_topic(session_id), _event("message_updated", event))
        return updated

    # ------------------------------------------------------------------
    # Websocket frames

    def handle_frame(self, session_id: str, raw: str | bytes) -> dict[str, Any] | None:
        """Apply one client frame; returns a direct reply frame, if any.

        Confirmed events are not returned here; they reach the sender through
        its bus subscription like every other viewer.
        """

        try:
            envelope = TransportEnvelope.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            logger.debug("Malformed frame on %s", session_id)
            return error_frame("Invalid message format")

        data = envelope.data
        try:
            if envelope.type == "ping":
                return {"type": "pong", "data": {"timestamp": utcnow().isoformat()}}
            if envelope.type == "message":
                sender = data.get("sender")
                if not isinstance(sender, dict):
                    sender = {}
                self.post_message(
                    session_id,
                    str(data.get("content") or ""),
                    str(data.get("role") or ""),
                    sender_id=sender.get("id"),
                    sender_name=sender.get("name"),
                )
            elif envelope.type in ("agent_joined", "operator_joined"):
                joined = OperatorJoinedEvent.model_validate(data)
                self.assign(session_id, joined.agent_id, joined.agent_name)
            elif envelope.type == "message_updated":
                update = MessageUpdatedEvent.model_validate(data)
                self.update_message(session_id, update.id, update.content)
            elif envelope.type == "typing":
                typing = TypingEvent.model_validate(data)
                self.bus.publish(session_topic(session_id), _event("typing", typing))
            else:
                return error_frame(f"Unknown message type '{envelope.type}'")
        except ValidationError:
            return error_frame(f"Invalid {envelope.type} payload")
        except (HandoffError, ValueError) as exc:
            logger.info("Rejected %s frame on %s: %s", envelope.type, session_id, exc)
            return error_frame(str(exc))
        return None


def get_relay(connection: HTTPConnection) -> SessionRelay:
    """FastAPI dependency returning the relay bound to the running app."""
    return connection.app.state.relay
