"""In-process publish/subscribe primitive used for local realtime delivery.

A :class:`ChannelBus` keeps one ordered list of callbacks per topic. It is an
ordinary object: the relay service, the local transport and test fixtures
each receive the instance they should share, so there is no process-wide
dispatcher.

When an event loop is running, every subscriber is scheduled on its own
(``loop.call_soon``) and coroutine callbacks run as independent tasks, so a
slow subscriber never delays the others. Outside a loop, plain callbacks are
invoked inline in registration order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Callback = Callable[[Any], Any]


class BusSubscription:
    """Handle returned by :meth:`ChannelBus.subscribe`."""

    def __init__(self, bus: "ChannelBus", topic: str, callback: Callback) -> None:
        self._bus = bus
        self.topic = topic
        self.callback = callback

    @property
    def active(self) -> bool:
        return self._bus.is_subscribed(self.topic, self.callback)

    def cancel(self) -> None:
        self._bus.unsubscribe(self.topic, self.callback)


class ChannelBus:
    def __init__(self) -> None:
        self._channels: dict[str, list[Callback]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, topic: str, callback: Callback) -> BusSubscription:
        subscribers = self._channels.setdefault(topic, [])
        if callback not in subscribers:
            subscribers.append(callback)
        logger.debug("Subscribed to %s (%d listeners)", topic, len(subscribers))
        return BusSubscription(self, topic, callback)

    def unsubscribe(self, topic: str, callback: Callback) -> bool:
        subscribers = self._channels.get(topic)
        if not subscribers or callback not in subscribers:
            return False
        subscribers.remove(callback)
        if not subscribers:
            del self._channels[topic]
        return True

    def is_subscribed(self, topic: str, callback: Callback) -> bool:
        return callback in self._channels.get(topic, ())

    def publish(self, topic: str, payload: Any) -> int:
        """Broadcast ``payload`` to every subscriber of ``topic``.

        Returns the number of subscribers the payload was dispatched to.
        """

        subscribers = list(self._channels.get(topic, ()))
        if not subscribers:
            return 0
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for callback in subscribers:
            if loop is None:
                self._deliver(topic, callback, payload, None)
            else:
                loop.call_soon(self._deliver, topic, callback, payload, loop)
        return len(subscribers)

    def listener_count(self, topic: str) -> int:
        return len(self._channels.get(topic, ()))

    def topics(self) -> list[str]:
        return list(self._channels)

    def clear(self, topic: str | None = None) -> None:
        if topic is None:
            self._channels.clear()
        else:
            self._channels.pop(topic, None)

    def _deliver(
        self,
        topic: str,
        callback: Callback,
        payload: Any,
        loop: asyncio.AbstractEventLoop | None,
    ) -> None:
        # Unsubscribed between publish and delivery.
        if not self.is_subscribed(topic, callback):
            return
        try:
            result = callback(payload)
        except Exception:
            logger.exception("Error in subscriber callback for %s", topic)
            return
        if inspect.isawaitable(result):
            if loop is None:
                logger.error(
                    "Coroutine subscriber on %s needs a running event loop", topic
                )
                if inspect.iscoroutine(result):
                    result.close()
                return
            task = loop.create_task(self._run_async(topic, result))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_async(self, topic: str, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Error in async subscriber callback for %s", topic)
