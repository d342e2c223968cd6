import asyncio

from handoff.bus import ChannelBus


def test_publish_without_loop_delivers_in_registration_order(bus):
    received = []
    bus.subscribe("t", lambda p: received.append(("a", p)))
    bus.subscribe("t", lambda p: received.append(("b", p)))

    assert bus.publish("t", 1) == 2
    assert received == [("a", 1), ("b", 1)]


def test_publish_is_namespaced_by_topic(bus):
    received = []
    bus.subscribe("session:a", received.append)

    assert bus.publish("session:b", "x") == 0
    assert received == []


def test_subscribe_twice_registers_once(bus):
    received = []
    bus.subscribe("t", received.append)
    bus.subscribe("t", received.append)

    bus.publish("t", "x")
    assert received == ["x"]
    assert bus.listener_count("t") == 1


def test_cancel_is_idempotent_and_stops_delivery(bus):
    received = []
    handle = bus.subscribe("t", received.append)

    handle.cancel()
    handle.cancel()
    assert not handle.active
    assert bus.unsubscribe("t", received.append) is False

    bus.publish("t", "x")
    assert received == []
    assert "t" not in bus.topics()


def test_failing_subscriber_does_not_block_others(bus):
    received = []

    def boom(_):
        raise RuntimeError("boom")

    bus.subscribe("t", boom)
    bus.subscribe("t", received.append)

    bus.publish("t", "x")
    assert received == ["x"]


def test_slow_async_subscriber_does_not_delay_fast_one():
    async def scenario():
        bus = ChannelBus()
        order = []
        release = asyncio.Event()

        async def slow(payload):
            await release.wait()
            order.append(("slow", payload))

        bus.subscribe("t", slow)
        bus.subscribe("t", lambda p: order.append(("fast", p)))

        bus.publish("t", 1)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert order == [("fast", 1)]

        release.set()
        await asyncio.sleep(0.01)
        return order

    assert asyncio.run(scenario()) == [("fast", 1), ("slow", 1)]


def test_unsubscribe_between_publish_and_delivery_stops_callback():
    async def scenario():
        bus = ChannelBus()
        received = []
        handle = bus.subscribe("t", received.append)
        bus.publish("t", "x")
        handle.cancel()
        await asyncio.sleep(0)
        return received

    assert asyncio.run(scenario()) == []


def test_clear_drops_subscribers(bus):
    bus.subscribe("a", lambda p: None)
    bus.subscribe("b", lambda p: None)

    bus.clear("a")
    assert bus.topics() == ["b"]
    bus.clear()
    assert bus.topics() == []
