from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List

import pytest
import requests

from handoff.bus import ChannelBus
from handoff.errors import EscalationRoutingError
from handoff.models import EscalationNotice, Message, Role
from handoff.routing import (
    ESCALATIONS_TOPIC,
    HttpOperatorRouter,
    LocalOperatorRouter,
    notice_payload,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _FakeSession:
    def __init__(self, response: _FakeResponse | Exception):
        self._response = response
        self.requests: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.requests.append({"url": url, **kwargs})
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


def _notice() -> EscalationNotice:
    return EscalationNotice(
        session_id="s1",
        reason="billing dispute",
        messages=[
            Message(id="u1", role=Role.END_USER, content="refund please", created_at=T0),
            Message(id="a1", role=Role.ASSISTANT, content="One moment.", created_at=T0),
        ],
        requested_at=T0,
    )


def test_notice_payload_shape():
    payload = notice_payload(_notice())

    assert payload["sessionId"] == "s1"
    assert payload["reason"] == "billing dispute"
    assert payload["timestamp"] == T0.isoformat()
    assert payload["messages"][0] == {
        "id": "u1",
        "role": "end_user",
        "content": "refund please",
        "timestamp": T0.isoformat(),
    }


def test_http_router_posts_notice():
    session = _FakeSession(_FakeResponse({"success": True, "message": "queued"}))
    router = HttpOperatorRouter("https://ops.example.com/escalate", session=session, timeout=3)

    body = asyncio.run(router.notify(_notice()))

    assert body["message"] == "queued"
    request = session.requests[0]
    assert request["url"] == "https://ops.example.com/escalate"
    assert request["timeout"] == 3
    assert request["json"]["sessionId"] == "s1"


def test_http_router_tolerates_empty_body():
    session = _FakeSession(_FakeResponse(ValueError("no json"), status_code=204))
    router = HttpOperatorRouter("https://ops.example.com/escalate", session=session)

    assert asyncio.run(router.notify(_notice())) == {}


@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse({"error": "boom"}, status_code=500),
        _FakeResponse({"success": False, "message": "no operators online"}),
        requests.ConnectionError("refused"),
    ],
)
def test_http_router_failures_are_retryable(response):
    router = HttpOperatorRouter("https://ops.example.com/escalate", session=_FakeSession(response))

    with pytest.raises(EscalationRoutingError) as excinfo:
        asyncio.run(router.notify(_notice()))

    assert excinfo.value.retryable is True
    assert excinfo.value.session_id == "s1"


def test_local_router_publishes_on_escalations_topic():
    bus = ChannelBus()
    received: List[Dict[str, Any]] = []
    bus.subscribe(ESCALATIONS_TOPIC, received.append)
    router = LocalOperatorRouter(bus)

    async def scenario():
        body = await router.notify(_notice())
        await asyncio.sleep(0)
        return body

    body = asyncio.run(scenario())

    assert body == {"success": True, "listeners": 1}
    assert received[0]["sessionId"] == "s1"
    assert [m["id"] for m in received[0]["messages"]] == ["u1", "a1"]
