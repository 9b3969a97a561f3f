import asyncio
import json

import pytest

from ordering.database import utcnow
from ordering.services.notifications import (
    ORDER_CREATED,
    ORDER_UPDATED,
    AdminRoom,
    LocalOrderNotifier,
    OrderEvent,
    RedisOrderNotifier,
)


class FakeClient:
    def __init__(self):
        self.received = []

    async def send_json(self, data):
        self.received.append(data)


class BrokenClient:
    async def send_json(self, data):
        raise ConnectionResetError("socket closed")


class StalledClient:
    async def send_json(self, data):
        await asyncio.sleep(10)


def order_event(event=ORDER_UPDATED, status="confirmed") -> OrderEvent:
    return OrderEvent(
        event=event,
        order_id=7,
        order_number="PEP-20260101-0007",
        status=status,
        previous_status="placed" if event == ORDER_UPDATED else None,
        diet_partition="veg",
        timestamp=utcnow(),
    )


@pytest.fixture
def room():
    return AdminRoom(send_timeout=0.05)


async def test_broadcast_reaches_every_member(room):
    first, second, outsider = FakeClient(), FakeClient(), FakeClient()
    room.join(first)
    room.join(second)

    delivered = await room.broadcast({"event": "ping"})

    assert delivered == 2
    assert first.received == second.received == [{"event": "ping"}]
    assert outsider.received == []


async def test_failed_and_stalled_clients_are_dropped(room):
    healthy, broken, stalled = FakeClient(), BrokenClient(), StalledClient()
    for client in (healthy, broken, stalled):
        room.join(client)

    delivered = await room.broadcast({"event": "ping"})

    assert delivered == 1
    assert healthy in room
    assert broken not in room
    assert stalled not in room
    assert len(room) == 1


async def test_leave_stops_delivery(room):
    client = FakeClient()
    room.join(client)
    room.leave(client)
    room.leave(client)

    assert await room.broadcast({"event": "ping"}) == 0
    assert client.received == []


async def test_local_notifier_publishes_wire_message():
    notifier = LocalOrderNotifier()
    client = FakeClient()
    notifier.room.join(client)
    event = order_event(ORDER_CREATED, status="placed")

    await notifier.publish(event)

    message = client.received[0]
    assert message["event"] == "orderCreated"
    assert message["data"]["order_number"] == "PEP-20260101-0007"
    assert message["data"]["timestamp"] == event.timestamp.isoformat()
    assert await notifier.health_check()


def test_event_message_round_trip():
    event = order_event()

    assert OrderEvent.from_message(json.loads(json.dumps(event.to_message()))) == event


async def test_redis_relay_delivers_to_local_room():
    notifier = RedisOrderNotifier(redis_url="redis://localhost:6379/15", channel="test-room")
    client = FakeClient()
    notifier.room.join(client)

    await notifier.relay(json.dumps(order_event().to_message()))
    await notifier.relay("not json")
    await notifier.relay(json.dumps({"event": "orderUpdated"}))

    assert [message["data"]["status"] for message in client.received] == ["confirmed"]
