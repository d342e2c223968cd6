"""Websocket route relaying a session's events to connected viewers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..config import get_settings
from ..relay import get_relay
from ..transports.base import session_topic

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

POLICY_VIOLATION = 1008


async def _forward(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        frame = await queue.get()
        await websocket.send_json(frame)


@router.websocket("/ws/sessions/{session_id}")
async def session_socket(websocket: WebSocket, session_id: str) -> None:
    if len(session_id) > get_settings().session_id_max_length:
        await websocket.close(code=POLICY_VIOLATION)
        return
    relay = get_relay(websocket)
    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def enqueue(frame: dict[str, Any]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, frame)

    subscription = relay.bus.subscribe(session_topic(session_id), enqueue)
    queue.put_nowait(relay.connected_frame(session_id))
    sender = asyncio.create_task(_forward(websocket, queue))
    logger.info("Viewer connected to %s", session_id)
    try:
        while True:
            raw = await websocket.receive_text()
            reply = relay.handle_frame(session_id, raw)
            if reply is not None:
                queue.put_nowait(reply)
    except WebSocketDisconnect:
        logger.info("Viewer disconnected from %s", session_id)
    finally:
        subscription.cancel()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Forwarding to viewer of %s failed", session_id)
