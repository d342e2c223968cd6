import asyncio

import pytest

from conftest import settle
from handoff.config import Settings
from handoff.transports import (
    EventHandlers,
    LocalTransport,
    Transport,
    WebSocketTransport,
    create_transport,
    dispatch_event,
    get_transport,
    session_topic,
)


def _collect():
    received = {"message": [], "joined": [], "updated": [], "error": []}
    handlers = dict(
        on_message=received["message"].append,
        on_operator_joined=received["joined"].append,
        on_message_updated=received["updated"].append,
        on_error=received["error"].append,
    )
    return received, handlers


def test_send_is_confirmed_to_every_subscriber(bus):
    first, second = LocalTransport(bus), LocalTransport(bus)
    a, a_handlers = _collect()
    b, b_handlers = _collect()

    async def scenario():
        first.subscribe("s1", **a_handlers)
        second.subscribe("s1", **b_handlers)
        assert await first.send("hello", "end_user", sender_id="u-1", sender_name="Dana") is True
        await settle()

    asyncio.run(scenario())

    assert len(a["message"]) == len(b["message"]) == 1
    message = a["message"][0]
    assert message.id.startswith("msg_")
    assert message.id == b["message"][0].id
    assert message.sender_id == "u-1"
    assert message.metadata["sender_name"] == "Dana"


def test_sessions_are_isolated(bus):
    transport, other = LocalTransport(bus), LocalTransport(bus)
    received, handlers = _collect()

    async def scenario():
        transport.subscribe("s1", **handlers)
        other.subscribe("s2", **_collect()[1])
        await other.send("elsewhere", "end_user")
        await settle()

    asyncio.run(scenario())

    assert received["message"] == []


def test_send_requires_subscription_and_content(bus):
    transport = LocalTransport(bus)

    async def scenario():
        assert await transport.send("hello", "end_user") is False
        transport.subscribe("s1", **_collect()[1])
        assert await transport.send("   ", "end_user") is False
        return await transport.send("hello", "end_user")

    assert asyncio.run(scenario()) is True


def test_operator_announcement_and_update(bus):
    transport = LocalTransport(bus)
    received, handlers = _collect()

    async def scenario():
        transport.subscribe("s1", **handlers)
        await transport.announce_operator("op-1", "Alice")
        await transport.update_message("msg_1", "edited")
        await settle()

    asyncio.run(scenario())

    assert received["joined"][0].operator_name == "Alice"
    assert received["updated"][0].id == "msg_1"
    assert received["updated"][0].content == "edited"


def test_cancel_stops_callbacks_and_is_idempotent(bus):
    transport = LocalTransport(bus)
    received, handlers = _collect()
    subscription = transport.subscribe("s1", **handlers)

    subscription.cancel()
    subscription.cancel()
    bus.publish(session_topic("s1"), {"type": "error", "error": "late"})

    assert received["error"] == []
    assert bus.listener_count(session_topic("s1")) == 0
    assert transport.session_id is None


def test_resubscribe_replaces_previous_session(bus):
    transport = LocalTransport(bus)
    transport.subscribe("s1", **_collect()[1])
    transport.subscribe("s2", **_collect()[1])

    assert bus.listener_count(session_topic("s1")) == 0
    assert transport.session_id == "s2"


def test_dispatch_ignores_unknown_and_malformed_events():
    received, handlers = _collect()
    handlers = EventHandlers(**handlers)

    assert dispatch_event("not json", handlers) is False
    assert dispatch_event({"type": "presence", "data": {}}, handlers) is False
    assert dispatch_event({"type": "message", "data": {"id": "x"}}, handlers) is False
    assert dispatch_event({"type": "typing", "data": {"userId": "u", "isTyping": True}}, handlers) is False
    assert dispatch_event(
        '{"type": "agent_joined", "data": {"agentId": "op", "agentName": "Al"}}', handlers
    )
    assert received["joined"][0].operator_id == "op"


def test_registry_resolves_configured_transport(bus):
    assert get_transport("LOCAL") is LocalTransport
    assert isinstance(create_transport(Settings(), bus=bus), LocalTransport)

    ws = create_transport(Settings(transport_name="websocket", ws_url="ws://relay:8000"))
    assert isinstance(ws, WebSocketTransport)

    with pytest.raises(KeyError):
        get_transport("carrier-pigeon")
    with pytest.raises(ValueError):
        create_transport(Settings(transport_name="websocket"))


def test_connected_greeting_with_assignment_counts_as_join():
    received, handlers = _collect()
    handlers = EventHandlers(**handlers)

    assert dispatch_event({"type": "connected", "data": {"sessionId": "s1"}}, handlers) is False
    assert dispatch_event(
        {
            "type": "connected",
            "data": {
                "sessionId": "s1",
                "agentId": "op-7",
                "agentName": "Bea",
                "assignedAt": "2024-05-01T12:00:00+00:00",
            },
        },
        handlers,
    )
    joined = received["joined"][0]
    assert joined.operator_id == "op-7"
    assert joined.operator_name == "Bea"
    assert joined.timestamp.hour == 12


def test_transports_must_know_how_to_build_from_settings():
    class Incomplete(Transport):
        transport_name = "incomplete"

        def _open(self, session_id, handlers):
            raise NotImplementedError

        async def _emit(self, session_id, event_type, data):
            return False

    with pytest.raises(TypeError):
        Incomplete()
    assert isinstance(LocalTransport.from_settings(Settings()), LocalTransport)
