"""Transport backed by an in-process :class:`~handoff.bus.ChannelBus`."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from ..bus import ChannelBus
from ..models import utcnow
from .base import EventHandlers, Subscription, Transport, session_topic

logger = logging.getLogger(__name__)


class LocalTransport(Transport):
    """Confirms messages locally and fans them out on the bus.

    Every viewer of a session that shares the same bus receives the
    confirmed record, the sender included, which is how optimistic messages
    get reconciled.
    """

    transport_name = "local"

    def __init__(self, bus: ChannelBus) -> None:
        super().__init__()
        self.bus = bus

    def _open(self, session_id: str, handlers: EventHandlers) -> Subscription:
        topic = session_topic(session_id)
        subscription = Subscription(
            session_id,
            handlers,
            on_cancel=lambda: self.bus.unsubscribe(topic, subscription.dispatch),
        )
        self.bus.subscribe(topic, subscription.dispatch)
        logger.debug("Local transport subscribed to %s", topic)
        return subscription

    async def _emit(self, session_id: str, event_type: str, data: dict[str, Any]) -> bool:
        if event_type == "message":
            data = {
                "id": f"msg_{uuid.uuid4().hex}",
                "timestamp": utcnow().isoformat(),
                **data,
            }
        self.bus.publish(session_topic(session_id), {"type": event_type, "data": data})
        return True

    @classmethod
    def from_settings(cls, settings: Any, *, bus: ChannelBus | None = None) -> "LocalTransport":
        return cls(bus if bus is not None else ChannelBus())
