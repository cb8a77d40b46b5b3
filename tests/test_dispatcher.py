import asyncio
import logging
from decimal import Decimal

from towing_negotiation.config import DispatchPolicy
from towing_negotiation.dispatcher import (
    EventDispatcher,
    InMemoryBroadcaster,
    LoggingPushGateway,
    PushNotificationSink,
    RecentKeys,
)
from towing_negotiation.state_models import EventType, NegotiationEvent

NO_WAIT = DispatchPolicy(max_attempts=3, wait_min=0, wait_max=0)


def _event(event_type=EventType.AMOUNT_PROPOSED, version=2, driver_id="driver-1"):
    return NegotiationEvent(
        service_id="srv-1",
        type=event_type,
        amount=Decimal("15000"),
        actor_id="driver-1",
        version=version,
        client_id="client-1",
        driver_id=driver_id,
    )


class FlakySink:
    name = "flaky"

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0
        self.delivered = []

    async def deliver(self, event):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("socket cerrado")
        self.delivered.append(event)


def test_transient_failures_are_retried():
    async def scenario():
        sink = FlakySink(failures=2)
        dispatcher = EventDispatcher([sink], policy=NO_WAIT)
        dispatcher.publish(_event())
        await dispatcher.drain()
        return sink

    sink = asyncio.run(scenario())
    assert sink.calls == 3
    assert len(sink.delivered) == 1


def test_failing_sink_does_not_block_others(caplog):
    async def scenario():
        broken = FlakySink(failures=10)
        broadcaster = InMemoryBroadcaster()
        dispatcher = EventDispatcher([broken, broadcaster], policy=NO_WAIT)
        dispatcher.publish(_event())
        await dispatcher.drain()
        return broken, broadcaster

    with caplog.at_level(logging.ERROR):
        broken, broadcaster = asyncio.run(scenario())
    assert broken.calls == 3
    assert len(broadcaster.events) == 1
    assert "apos retries" in caplog.text


def test_worker_delivers_in_background():
    async def scenario():
        broadcaster = InMemoryBroadcaster()
        dispatcher = EventDispatcher([broadcaster], policy=NO_WAIT)
        dispatcher.start()
        dispatcher.publish(_event(version=2))
        dispatcher.publish(_event(EventType.AMOUNT_CONFIRMED, version=3))
        await dispatcher.drain()
        await dispatcher.stop()
        return broadcaster

    broadcaster = asyncio.run(scenario())
    assert [e.type for e in broadcaster.events] == [EventType.AMOUNT_PROPOSED, EventType.AMOUNT_CONFIRMED]


def test_redelivery_is_idempotent():
    """Entrega at-least-once: o mesmo (service_id, type, version) não é duplicado nos consumidores."""

    async def scenario():
        broadcaster = InMemoryBroadcaster()
        gateway = LoggingPushGateway()
        dispatcher = EventDispatcher([broadcaster, PushNotificationSink(gateway)], policy=NO_WAIT)
        dispatcher.publish(_event())
        dispatcher.publish(_event())
        await dispatcher.drain()
        return broadcaster, gateway

    broadcaster, gateway = asyncio.run(scenario())
    assert len(broadcaster.events) == 1
    assert len(gateway.sent) == 1


def test_full_queue_keeps_events_in_overflow(caplog):
    """Fila cheia não descarta: o excedente é entregue depois, na ordem de publicação."""

    async def scenario():
        broadcaster = InMemoryBroadcaster()
        dispatcher = EventDispatcher([broadcaster], policy=DispatchPolicy(queue_size=1, wait_min=0, wait_max=0))
        dispatcher.publish(_event(version=2))
        dispatcher.publish(_event(EventType.AMOUNT_CONFIRMED, version=3))
        dispatcher.publish(_event(EventType.AMOUNT_ACCEPTED, version=4))
        assert dispatcher.pending == 3
        await dispatcher.drain()
        assert dispatcher.pending == 0
        return broadcaster

    with caplog.at_level(logging.WARNING):
        broadcaster = asyncio.run(scenario())
    assert [e.version for e in broadcaster.events] == [2, 3, 4]
    assert "Fila de eventos cheia" in caplog.text


def test_worker_flushes_overflow():
    async def scenario():
        broadcaster = InMemoryBroadcaster()
        dispatcher = EventDispatcher([broadcaster], policy=DispatchPolicy(queue_size=1, wait_min=0, wait_max=0))
        dispatcher.start()
        for version in range(2, 7):
            dispatcher.publish(_event(version=version))
        await dispatcher.stop()
        return broadcaster, dispatcher

    broadcaster, dispatcher = asyncio.run(scenario())
    assert [e.version for e in broadcaster.events] == [2, 3, 4, 5, 6]
    assert dispatcher.pending == 0


def test_dedup_window_is_bounded():
    keys = RecentKeys(maxsize=2)
    keys.add(("srv-1", "amount_proposed", 2))
    keys.add(("srv-1", "amount_confirmed", 3))
    keys.add(("srv-1", "amount_accepted", 4))

    assert len(keys) == 2
    assert ("srv-1", "amount_proposed", 2) not in keys
    assert ("srv-1", "amount_accepted", 4) in keys


def test_broadcaster_dedups_within_window():
    async def scenario():
        broadcaster = InMemoryBroadcaster(dedup_window=2)
        for version in (2, 3, 3, 4):
            await broadcaster.deliver(_event(version=version))
        return broadcaster

    broadcaster = asyncio.run(scenario())
    assert [e.version for e in broadcaster.events] == [2, 3, 4]
    assert len(broadcaster._seen) == 2


def test_push_sink_skips_events_without_recipient():
    async def scenario():
        gateway = LoggingPushGateway()
        dispatcher = EventDispatcher([PushNotificationSink(gateway)], policy=NO_WAIT)
        dispatcher.publish(_event(EventType.NEGOTIATION_CANCELLED, version=2, driver_id=None))
        await dispatcher.drain()
        return gateway

    assert asyncio.run(scenario()).sent == []
