"""Notification of the operator-routing collaborator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import requests

from .bus import ChannelBus
from .errors import EscalationRoutingError
from .models import EscalationNotice

logger = logging.getLogger(__name__)

ESCALATIONS_TOPIC = "escalations"


def notice_payload(notice: EscalationNotice) -> dict[str, Any]:
    return {
        "sessionId": notice.session_id,
        "reason": notice.reason,
        "messages": [
            {"id": message.id, **message.to_history()} for message in notice.messages
        ],
        "timestamp": notice.requested_at.isoformat(),
    }


class OperatorRouter(Protocol):
    async def notify(self, notice: EscalationNotice) -> dict[str, Any]:
        """Hand the escalation over; raise ``EscalationRoutingError`` on failure."""


class HttpOperatorRouter:
    def __init__(
        self,
        url: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    async def notify(self, notice: EscalationNotice) -> dict[str, Any]:
        return await asyncio.to_thread(self._post, notice)

    def _post(self, notice: EscalationNotice) -> dict[str, Any]:
        try:
            response = self.session.post(
                self.url, json=notice_payload(notice), timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise EscalationRoutingError(
                f"Operator routing request failed: {exc}", session_id=notice.session_id
            ) from exc
        if response.status_code >= 400:
            raise EscalationRoutingError(
                f"Operator routing returned HTTP {response.status_code}",
                session_id=notice.session_id,
            )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if body.get("success") is False:
            raise EscalationRoutingError(
                str(body.get("message") or "Operator routing was refused"),
                session_id=notice.session_id,
            )
        logger.info("Escalation for %s routed to operators", notice.session_id)
        return body


class LocalOperatorRouter:
    """Publish escalations on the bus for an in-process operator console."""

    def __init__(self, bus: ChannelBus, topic: str = ESCALATIONS_TOPIC) -> None:
        self.bus = bus
        self.topic = topic

    async def notify(self, notice: EscalationNotice) -> dict[str, Any]:
        payload = notice_payload(notice)
        listeners = self.bus.publish(self.topic, payload)
        logger.info(
            "Escalation for %s published to %d listener(s)", notice.session_id, listeners
        )
        return {"success": True, "listeners": listeners}
