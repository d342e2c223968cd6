"""Session state controller: one conversation from AI answers to a live operator.

The controller owns the explicit :class:`~handoff.models.Session` state and
is the only place where mode changes happen::

    AI_ONLY -> ESCALATION_SUGGESTED -> CONNECTING -> LIVE

In ``AI_ONLY`` and ``ESCALATION_SUGGESTED`` a user message is answered by the
generation backend. Once the user confirms the handoff the controller notifies
operator routing and, from then on, every message goes through the message
reconciler and the realtime transport; the backend is never called again for
that session.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from .errors import DuplicatePendingMessageError, EscalationRoutingError, GenerationError
from .escalation import EscalationDetector
from .generation import GenerationClient
from .models import (
    REALTIME_MODES,
    EscalationNotice,
    Message,
    MessageUpdate,
    OperatorJoined,
    Role,
    Session,
    SessionMode,
    StreamStatus,
)
from .reconciliation import MessageReconciler, system_message
from .routing import OperatorRouter
from .schemas import SessionResume, TypingEvent
from .streaming import StreamConsumer
from .transports.base import Subscription, Transport

logger = logging.getLogger(__name__)

CONNECTING_NOTICE = "Connecting you to a support agent. Please wait..."
ROUTING_FAILURE_NOTICE = (
    "Failed to connect to support. Please try again or contact us directly."
)
AI_ERROR_NOTICE = "Sorry, I encountered an error. Please try again."
OPERATOR_JOINED_PREFIX = "system_agent_joined_"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class SessionController:
    def __init__(
        self,
        session_id: str,
        *,
        transport: Transport,
        generator: GenerationClient | None = None,
        router: OperatorRouter | None = None,
        detector: EscalationDetector | None = None,
        role: Role = Role.END_USER,
        sender_id: str | None = None,
        sender_name: str | None = None,
        confirmation_timeout: float = 10.0,
        stream_idle_timeout: float | None = None,
        welcome_message: str | None = None,
        on_change: Callable[["SessionController"], Any] | None = None,
    ) -> None:
        self.session = Session.new(session_id)
        self.transport = transport
        self.generator = generator
        self.router = router
        self.detector = detector or EscalationDetector()
        self.role = Role.parse(role)
        self.sender_id = sender_id
        self.sender_name = sender_name
        self.confirmation_timeout = confirmation_timeout
        self.stream_idle_timeout = stream_idle_timeout
        self.on_change = on_change
        self.reconciler = MessageReconciler()
        self.operator_name: str | None = None
        self.last_error: str | None = None
        self.typing: dict[str, bool] = {}
        self._subscription: Subscription | None = None
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._streaming_content: str | None = None
        self._stream_owner: object | None = None
        self._chat_id: str | None = None
        if welcome_message:
            self.reconciler.append_local(
                Message(id="welcome", role=Role.ASSISTANT, content=welcome_message)
            )

    # ------------------------------------------------------------------
    # Read-only projections

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def mode(self) -> SessionMode:
        return self.session.mode

    @property
    def messages(self) -> list[Message]:
        return self.reconciler.messages

    @property
    def escalation_suggested(self) -> bool:
        return self.session.mode is SessionMode.ESCALATION_SUGGESTED

    @property
    def awaiting_operator(self) -> bool:
        return self.session.mode is SessionMode.CONNECTING

    @property
    def realtime(self) -> bool:
        return self.session.mode in REALTIME_MODES

    @property
    def is_live(self) -> bool:
        return self.session.mode is SessionMode.LIVE

    @property
    def escalation_reason(self) -> str | None:
        return self.session.escalation_reason

    @property
    def assigned_at(self) -> datetime | None:
        return self.session.assigned_at

    @property
    def assigned_operator_id(self) -> str | None:
        return self.session.assigned_operator_id

    @property
    def streaming_content(self) -> str | None:
        """Partial assistant reply while a generation stream is in flight."""
        return self._streaming_content

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    # ------------------------------------------------------------------
    # Lifecycle

    async def load(self, resume: SessionResume | Mapping[str, Any]) -> None:
        """Restore a session from the chat store.

        A session already picked up by an operator resumes directly in
        ``LIVE`` without contacting operator routing or the generation
        backend. One marked escalated but not yet assigned resumes in
        ``CONNECTING``. Loading again later only moves the mode forward and
        never replaces an assignment already recorded.
        """

        if not isinstance(resume, SessionResume):
            resume = SessionResume.model_validate(resume)
        history = [item.to_message() for item in resume.messages]
        if history:
            self.reconciler.load(history)
        if resume.escalation_requested:
            self.session.escalation_reason = (
                resume.escalation_reason
                or self.session.escalation_reason
                or self.detector.default_reason
            )
            target = (
                SessionMode.LIVE if resume.assigned_at is not None else SessionMode.CONNECTING
            )
            for mode in (SessionMode.ESCALATION_SUGGESTED, SessionMode.CONNECTING, target):
                if mode.rank > self.session.mode.rank:
                    self.session.advance(mode)
            if resume.assigned_at is not None:
                self.session.stamp_assignment(
                    resume.assigned_operator_id, resume.assigned_at
                )
            self._open_subscription()
            logger.info(
                "Resumed session %s in %s mode", self.session.id, self.session.mode.value
            )
        self._changed()

    async def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        await self.transport.close()

    # ------------------------------------------------------------------
    # User actions

    async def send(self, content: str) -> bool:
        text = (content or "").strip()
        if not text:
            return False
        if self.realtime:
            return await self._send_realtime(text)
        if self.role is not Role.END_USER:
            logger.warning(
                "Session %s is not escalated; %s messages need a realtime session",
                self.session.id,
                self.role.value,
            )
            return False
        return await self._send_ai(text)

    async def request_human(self) -> bool:
        """Confirm the suggested handoff and notify operator routing.

        Raises :class:`EscalationRoutingError` after rolling back to
        ``ESCALATION_SUGGESTED`` when routing fails; the call may be retried.
        """

        if self.session.mode is not SessionMode.ESCALATION_SUGGESTED:
            logger.debug(
                "Ignoring handoff request for %s in %s mode",
                self.session.id,
                self.session.mode.value,
            )
            return False

        self.session.advance(SessionMode.CONNECTING)
        self._append(system_message(CONNECTING_NOTICE))
        notice = EscalationNotice(
            session_id=self.session.id,
            reason=self.session.escalation_reason or self.detector.default_reason,
            messages=[m for m in self.reconciler.messages if m.role is not Role.SYSTEM],
        )
        try:
            if self.router is None:
                raise EscalationRoutingError(
                    "Operator routing is not configured", session_id=self.session.id
                )
            await self.router.notify(notice)
        except EscalationRoutingError as exc:
            self._routing_failed(exc)
            raise
        except Exception as exc:
            error = EscalationRoutingError(str(exc), session_id=self.session.id)
            self._routing_failed(error)
            raise error from exc

        self._open_subscription()
        logger.info("Session %s is waiting for an operator", self.session.id)
        self._changed()
        return True

    # ------------------------------------------------------------------
    # Operator actions

    async def join(
        self, operator_id: str | None = None, operator_name: str | None = None
    ) -> bool:
        if not self.realtime:
            logger.warning("Cannot join session %s before escalation", self.session.id)
            return False
        return await self.transport.announce_operator(
            operator_id or self.sender_id or "operator",
            operator_name or self.sender_name or "Support Agent",
        )

    async def edit(self, message_id: str, content: str) -> bool:
        text = (content or "").strip()
        message = self.reconciler.get(message_id)
        if not text or message is None or not self.realtime:
            return False
        if message.role is not self.role or message.is_optimistic:
            logger.warning("Message %s cannot be edited from this session", message_id)
            return False
        return await self.transport.update_message(message_id, text)

    async def set_typing(self, is_typing: bool) -> bool:
        if not self.realtime:
            return False
        return await self.transport.send_typing(is_typing, self.sender_id or "anonymous")

    # ------------------------------------------------------------------
    # AI mode

    async def _send_ai(self, text: str) -> bool:
        history = [m for m in self.reconciler.messages if m.role is not Role.SYSTEM]
        self._append(
            Message(
                id=_new_id("user"),
                role=self.role,
                content=text,
                sender_id=self.sender_id,
            )
        )
        if self.generator is None:
            logger.error("No generation backend configured for %s", self.session.id)
            self._append_ai_error()
            return False

        consumer = StreamConsumer(idle_timeout=self.stream_idle_timeout)
        # The most recent send owns the streaming projection.
        owner = object()
        self._stream_owner = owner
        self._streaming_content = ""
        partial = ""
        try:
            source = self.generator.stream(text, history, chat_id=self._chat_id)
            async for chunk in consumer.iter_chunks(source):
                if chunk.delta_content:
                    partial += chunk.delta_content
                    if self._stream_owner is owner:
                        self._streaming_content = partial
                    self._changed()
        except GenerationError as exc:
            logger.warning("Generation failed for %s: %s", self.session.id, exc)
        finally:
            if self._stream_owner is owner:
                self._stream_owner = None
                self._streaming_content = None

        result = consumer.finish()
        if result.chat_id:
            self._chat_id = result.chat_id
        if not result.content:
            self._append_ai_error()
            return False

        terminal = result.terminal_metadata
        detection = self.detector.detect(
            result.content, reason=terminal.escalation_reason if terminal else None
        )
        requested = detection.escalation_requested or bool(
            terminal and terminal.escalation_requested
        )
        escalate = requested and result.is_complete
        metadata: dict[str, Any] = {
            "status": result.status.value,
            "truncated": result.truncated,
            "sources": list(terminal.sources) if terminal else [],
            "escalation": escalate,
        }
        if result.error:
            metadata["error"] = result.error
        self.reconciler.append_local(
            Message(
                id=_new_id("assistant"),
                role=Role.ASSISTANT,
                content=detection.clean_content,
                metadata=metadata,
            )
        )
        if escalate and self.session.mode is SessionMode.AI_ONLY:
            reason = detection.escalation_reason or (
                terminal.escalation_reason if terminal else None
            )
            self.session.escalation_reason = reason or self.detector.default_reason
            self.session.advance(SessionMode.ESCALATION_SUGGESTED)
            logger.info(
                "Escalation suggested for %s: %s",
                self.session.id,
                self.session.escalation_reason,
            )
        elif requested and not result.is_complete:
            logger.info(
                "Ignoring escalation request on %s response for %s",
                result.status.value,
                self.session.id,
            )
        self._changed()
        return result.status is not StreamStatus.FAILED

    def _append_ai_error(self) -> None:
        self._append(
            Message(
                id=_new_id("error"),
                role=Role.ASSISTANT,
                content=AI_ERROR_NOTICE,
                metadata={"error": True},
            )
        )

    # ------------------------------------------------------------------
    # Realtime mode

    async def _send_realtime(self, text: str) -> bool:
        try:
            optimistic = self.reconciler.begin_send(text, self.role, sender_id=self.sender_id)
        except DuplicatePendingMessageError as exc:
            logger.warning("Not sending on %s: %s", self.session.id, exc)
            return False
        self._changed()

        sent = await self.transport.send(
            text, self.role, sender_id=self.sender_id, sender_name=self.sender_name
        )
        if not sent:
            logger.warning("Transport refused message for %s", self.session.id)
            self._cancel_timer(optimistic.id)
            self.reconciler.fail_send(optimistic.id)
            self._changed()
            return False
        if self.reconciler.is_pending(optimistic.id):
            loop = asyncio.get_running_loop()
            self._timers[optimistic.id] = loop.call_later(
                self.confirmation_timeout, self._expire, optimistic.id
            )
        return True

    def _expire(self, optimistic_id: str) -> None:
        self._timers.pop(optimistic_id, None)
        if self.reconciler.expire(optimistic_id) is not None:
            self._changed()

    def _cancel_timer(self, optimistic_id: str) -> None:
        handle = self._timers.pop(optimistic_id, None)
        if handle is not None:
            handle.cancel()

    def _open_subscription(self) -> None:
        if self._subscription is not None and self._subscription.active:
            return
        self._subscription = self.transport.subscribe(
            self.session.id,
            on_message=self._on_message,
            on_operator_joined=self._on_operator_joined,
            on_message_updated=self._on_message_updated,
            on_error=self._on_error,
            on_typing=self._on_typing,
        )

    # ------------------------------------------------------------------
    # Transport callbacks

    def _on_message(self, message: Message) -> None:
        pending_before = set(self.reconciler.pending_ids)
        if self.reconciler.confirm(message) is None:
            return
        for optimistic_id in pending_before - set(self.reconciler.pending_ids):
            self._cancel_timer(optimistic_id)
        self._changed()

    def _on_operator_joined(self, event: OperatorJoined) -> None:
        if self.session.mode is SessionMode.LIVE:
            logger.debug("Session %s already live; ignoring join", self.session.id)
            return
        self.session.advance(SessionMode.LIVE)
        self.session.stamp_assignment(event.operator_id, event.timestamp)
        self.operator_name = event.operator_name
        if not any(m.id.startswith(OPERATOR_JOINED_PREFIX) for m in self.reconciler):
            self.reconciler.append_local(
                system_message(
                    f"You're now connected to {event.operator_name}",
                    id_prefix=OPERATOR_JOINED_PREFIX,
                )
            )
        logger.info(
            "Operator %s joined session %s", event.operator_id, self.session.id
        )
        self._changed()

    def _on_message_updated(self, update: MessageUpdate) -> None:
        if self.reconciler.update(update.id, update.content, update.updated_at) is not None:
            self._changed()

    def _on_error(self, error: str) -> None:
        logger.warning("Realtime error on %s: %s", self.session.id, error)
        self.last_error = error
        self._append(system_message(error))

    def _on_typing(self, event: TypingEvent) -> None:
        if event.user_id == self.sender_id:
            return
        self.typing[event.user_id] = event.is_typing
        self._changed()

    # ------------------------------------------------------------------
    # Helpers

    def _routing_failed(self, exc: EscalationRoutingError) -> None:
        logger.warning("Operator routing failed for %s: %s", self.session.id, exc)
        self.session.rollback_to_suggested()
        self._append(system_message(ROUTING_FAILURE_NOTICE))

    def _append(self, message: Message) -> None:
        self.reconciler.append_local(message)
        self._changed()

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self)
        except Exception:
            logger.exception("Error in change listener for %s", self.session.id)
