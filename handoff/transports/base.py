"""Base abstractions for realtime transports."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from ..models import Message, MessageUpdate, OperatorJoined, Role, utcnow
from ..schemas import (
    MessageEvent,
    MessageUpdatedEvent,
    OperatorJoinedEvent,
    TransportEnvelope,
    TypingEvent,
)

logger = logging.getLogger(__name__)


def session_topic(session_id: str) -> str:
    return f"session:{session_id}"


@dataclass
class EventHandlers:
    on_message: Callable[[Message], Any]
    on_operator_joined: Callable[[OperatorJoined], Any]
    on_message_updated: Callable[[MessageUpdate], Any]
    on_error: Callable[[str], Any]
    on_typing: Callable[[TypingEvent], Any] | None = None


def dispatch_event(
    raw: Mapping[str, Any] | str | bytes, handlers: EventHandlers
) -> bool:
    """Decode one transport envelope and invoke the matching handler.

    Returns ``True`` when a handler was called. Malformed envelopes and
    unknown event types are logged and dropped.
    """

    try:
        if isinstance(raw, (str, bytes, bytearray)):
            raw = json.loads(raw)
        envelope = TransportEnvelope.model_validate(raw)
    except (ValueError, ValidationError) as exc:
        logger.debug("Dropping malformed transport envelope: %s", exc)
        return False

    try:
        if envelope.type == "message":
            handlers.on_message(MessageEvent.model_validate(envelope.data).to_message())
        elif envelope.type in ("operator_joined", "agent_joined"):
            handlers.on_operator_joined(
                OperatorJoinedEvent.model_validate(envelope.data).to_domain()
            )
        elif envelope.type == "connected":
            data = envelope.data
            if not data.get("agentId") or not data.get("assignedAt"):
                return False
            joined = OperatorJoinedEvent.model_validate(
                {
                    "agentId": data["agentId"],
                    "agentName": data.get("agentName") or "Support Agent",
                    "timestamp": data["assignedAt"],
                }
            )
            handlers.on_operator_joined(joined.to_domain())
        elif envelope.type == "message_updated":
            handlers.on_message_updated(
                MessageUpdatedEvent.model_validate(envelope.data).to_domain()
            )
        elif envelope.type == "typing":
            if handlers.on_typing is None:
                return False
            handlers.on_typing(TypingEvent.model_validate(envelope.data))
        elif envelope.type == "error":
            handlers.on_error(
                envelope.error or str(envelope.data.get("message") or "Unknown error")
            )
        else:
            logger.debug("Ignoring transport event of type %s", envelope.type)
            return False
    except (ValueError, ValidationError) as exc:
        logger.debug("Dropping invalid %s event: %s", envelope.type, exc)
        return False
    return True


class Subscription:
    """Handle for one session's event stream; ``cancel`` stops delivery."""

    def __init__(
        self,
        session_id: str,
        handlers: EventHandlers,
        on_cancel: Callable[[], None] | None = None,
    ) -> None:
        self.session_id = session_id
        self.handlers = handlers
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._on_cancel is not None:
            self._on_cancel()

    def dispatch(self, raw: Mapping[str, Any] | str | bytes) -> bool:
        if not self._active:
            return False
        return dispatch_event(raw, self.handlers)


class Transport(ABC):
    """Carries realtime events for one session at a time."""

    #: Lowercase identifier used in configuration.
    transport_name: str

    def __init__(self) -> None:
        self._subscription: Subscription | None = None

    @classmethod
    @abstractmethod
    def from_settings(cls, settings: Any, *, bus: Any = None) -> "Transport":
        """Build the transport from :class:`~handoff.config.Settings`."""

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    @property
    def session_id(self) -> str | None:
        if self._subscription is None or not self._subscription.active:
            return None
        return self._subscription.session_id

    def subscribe(
        self,
        session_id: str,
        on_message: Callable[[Message], Any],
        on_operator_joined: Callable[[OperatorJoined], Any],
        on_message_updated: Callable[[MessageUpdate], Any],
        on_error: Callable[[str], Any],
        on_typing: Callable[[TypingEvent], Any] | None = None,
    ) -> Subscription:
        """Start delivering events for ``session_id``.

        A transport follows a single session; subscribing again cancels the
        previous subscription first.
        """

        if self._subscription is not None:
            self._subscription.cancel()
        handlers = EventHandlers(
            on_message=on_message,
            on_operator_joined=on_operator_joined,
            on_message_updated=on_message_updated,
            on_error=on_error,
            on_typing=on_typing,
        )
        subscription = self._open(session_id, handlers)
        self._subscription = subscription
        return subscription

    async def send(
        self,
        content: str,
        role: Role | str,
        *,
        sender_id: str | None = None,
        sender_name: str | None = None,
    ) -> bool:
        if not content or not content.strip():
            return False
        data: dict[str, Any] = {"content": content, "role": Role.parse(role).value}
        if sender_id or sender_name:
            data["sender"] = {
                "id": sender_id or "anonymous",
                "name": sender_name or "Customer",
            }
        return await self._emit_active("message", data)

    async def announce_operator(self, operator_id: str, operator_name: str) -> bool:
        return await self._emit_active(
            "operator_joined",
            {
                "agentId": operator_id,
                "agentName": operator_name,
                "timestamp": utcnow().isoformat(),
            },
        )

    async def update_message(self, message_id: str, content: str) -> bool:
        if not content or not content.strip():
            return False
        return await self._emit_active(
            "message_updated",
            {"id": message_id, "content": content, "updatedAt": utcnow().isoformat()},
        )

    async def send_typing(self, is_typing: bool, user_id: str = "anonymous") -> bool:
        return await self._emit_active("typing", {"userId": user_id, "isTyping": is_typing})

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    async def _emit_active(self, event_type: str, data: dict[str, Any]) -> bool:
        session_id = self.session_id
        if session_id is None:
            logger.warning("Cannot send %s without an active subscription", event_type)
            return False
        return await self._emit(session_id, event_type, data)

    @abstractmethod
    def _open(self, session_id: str, handlers: EventHandlers) -> Subscription:
        """Create the subscription and start delivering events to it."""

    @abstractmethod
    async def _emit(self, session_id: str, event_type: str, data: dict[str, Any]) -> bool:
        """Deliver one outgoing event; return ``False`` instead of raising."""
