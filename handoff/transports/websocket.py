"""Transport over a persistent websocket to the relay service."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import quote, urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from .base import EventHandlers, Subscription, Transport

logger = logging.getLogger(__name__)

RECONNECT_FAILED_MESSAGE = "Failed to reconnect after multiple attempts"


class WebSocketTransport(Transport):
    """Follow one session through ``<url>/ws/sessions/<id>``.

    The connection is re-established with exponential backoff when it drops.
    Once ``max_attempts`` consecutive attempts have failed the subscriber's
    ``on_error`` handler is told and the transport gives up.
    """

    transport_name = "websocket"

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        max_attempts: int = 10,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        connect: Callable[..., Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        super().__init__()
        self.url = url.rstrip("/")
        self.token = token
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._connect = connect or websockets.connect
        self._sleep = sleep or asyncio.sleep
        self._ws: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._attempts = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def session_url(self, session_id: str) -> str:
        url = f"{self.url}/ws/sessions/{quote(session_id, safe='')}"
        if self.token:
            url = f"{url}?{urlencode({'token': self.token})}"
        return url

    def backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay * 2**attempt, self.max_delay)

    # ------------------------------------------------------------------
    # Transport hooks

    def _open(self, session_id: str, handlers: EventHandlers) -> Subscription:
        loop = asyncio.get_running_loop()
        subscription = Subscription(session_id, handlers, on_cancel=self._stop_reader)
        self._attempts = 0
        self._reader = loop.create_task(self._run(subscription))
        return subscription

    async def _emit(self, session_id: str, event_type: str, data: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            logger.warning("Realtime connection for %s is not open", session_id)
            return False
        try:
            await ws.send(json.dumps({"type": event_type, "data": data}))
        except (ConnectionClosed, OSError) as exc:
            logger.warning("Failed to send %s event for %s: %s", event_type, session_id, exc)
            return False
        return True

    async def close(self) -> None:
        await super().close()
        reader = self._reader
        if reader is not None and not reader.done():
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._reader = None

    # ------------------------------------------------------------------
    # Connection loop

    async def _run(self, subscription: Subscription) -> None:
        url = self.session_url(subscription.session_id)
        while subscription.active:
            try:
                async with self._connect(url) as ws:
                    self._ws = ws
                    self._attempts = 0
                    logger.info("Realtime connection open for %s", subscription.session_id)
                    async for raw in ws:
                        if not subscription.active:
                            break
                        try:
                            subscription.dispatch(raw)
                        except Exception:
                            logger.exception(
                                "Error handling realtime frame for %s",
                                subscription.session_id,
                            )
            except (ConnectionClosed, InvalidHandshake, OSError, asyncio.TimeoutError) as exc:
                logger.warning(
                    "Realtime connection for %s lost: %s", subscription.session_id, exc
                )
            finally:
                self._ws = None
            if not subscription.active:
                break
            if self._attempts >= self.max_attempts:
                logger.error(
                    "Giving up on %s after %d reconnect attempts",
                    subscription.session_id,
                    self._attempts,
                )
                subscription.handlers.on_error(RECONNECT_FAILED_MESSAGE)
                break
            delay = self.backoff_delay(self._attempts)
            self._attempts += 1
            logger.info(
                "Reconnecting %s in %.1fs (attempt %d/%d)",
                subscription.session_id,
                delay,
                self._attempts,
                self.max_attempts,
            )
            await self._sleep(delay)

    def _stop_reader(self) -> None:
        reader = self._reader
        if reader is not None and not reader.done():
            reader.cancel()

    @classmethod
    def from_settings(cls, settings: Any, **_: Any) -> "WebSocketTransport":
        if not settings.ws_url:
            raise ValueError("HANDOFF_WS_URL is required for the websocket transport")
        return cls(
            settings.ws_url,
            token=settings.ws_token,
            max_attempts=settings.reconnect_max_attempts,
            max_delay=settings.reconnect_max_delay,
        )
