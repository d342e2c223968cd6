import asyncio
import json
import pathlib
import sys
from typing import Any

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from handoff.app_logging import init_logging
from handoff.bus import ChannelBus
from handoff.config import reset_settings_cache
from handoff.session import SessionController
from handoff.transports import LocalTransport


def sse(*payloads: Any, done: bool = True) -> list[str]:
    """Render payloads as generation-stream lines."""
    lines = [f"data: {json.dumps(payload, ensure_ascii=False)}\n" for payload in payloads]
    if done:
        lines.append("data: [DONE]\n")
    return lines


async def settle(rounds: int = 5) -> None:
    """Let callbacks scheduled with ``call_soon`` run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeGenerator:
    """Scripted generation backend; each queued response is one stream."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def stream(self, message, history, *, chat_id=None):
        self.calls.append({"message": message, "history": list(history), "chat_id": chat_id})
        if not self.responses:
            raise AssertionError("no more responses queued")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        for item in response:
            if isinstance(item, Exception):
                raise item
            yield item


class FakeRouter:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.notices = []

    async def notify(self, notice):
        self.notices.append(notice)
        if self.error is not None:
            raise self.error
        return {"success": True}


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    for name in ("HANDOFF_TRANSPORT", "HANDOFF_WS_URL", "GENERATION_URL", "OPERATOR_ROUTING_URL"):
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def bus() -> ChannelBus:
    return ChannelBus()


@pytest.fixture
def make_controller(bus):
    def _make(session_id: str = "s1", **kwargs: Any) -> SessionController:
        kwargs.setdefault("transport", LocalTransport(bus))
        kwargs.setdefault("router", FakeRouter())
        return SessionController(session_id, **kwargs)

    return _make


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
