import asyncio
import json

from realtime import Outbox, RoomHub, owner_room, public_room, staff_room, table_room, user_room


class FakeWebSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)


class StuckWebSocket:
    """Never finishes sending, like a client that stopped reading."""

    def __init__(self):
        self.sent = []
        self._never = asyncio.Event()

    async def send_json(self, message):
        self.sent.append(message)
        await self._never.wait()


class ScriptedWebSocket(FakeWebSocket):
    """Hands ``serve`` a fixed list of frames, then disconnects."""

    def __init__(self, frames):
        super().__init__()
        self.frames = list(frames)
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def receive(self):
        # let the writer send what the previous frame queued
        for _ in range(5):
            await asyncio.sleep(0)
        if self.frames:
            return self.frames.pop(0)
        return {"type": "websocket.disconnect", "code": 1000}


async def settle(*conns):
    for _ in range(5):
        await asyncio.sleep(0)
    for conn in conns:
        await conn.queue.join()


def events(sent):
    return [m["event"] for m in sent]


def test_join_is_acknowledged_and_events_are_delivered_in_order():
    async def scenario():
        hub = RoomHub(queue_size=16, offline_grace=0)
        ws = FakeWebSocket()
        conn = hub.connect(ws)
        await hub.handle_message(conn, {"event": "join_public_room", "data": 7})
        for stock in (3, 2, 1):
            hub.publish(public_room(7), "menu_stock_update", [{"id": 1, "stock": stock}])
        await settle(conn)
        await hub.disconnect(conn)
        return ws.sent

    sent = asyncio.run(scenario())

    assert sent[0] == {"event": "room_joined", "data": {"room": "restro_public_7"}}
    assert [m["data"][0]["stock"] for m in sent[1:]] == [3, 2, 1]


def test_events_only_reach_members_of_the_room():
    async def scenario():
        hub = RoomHub(queue_size=16, offline_grace=0)
        diner, staff = FakeWebSocket(), FakeWebSocket()
        diner_conn, staff_conn = hub.connect(diner), hub.connect(staff)
        await hub.handle_message(diner_conn, {"event": "join_table_room", "data": {"restroId": 1, "tableId": 4}})
        await hub.handle_message(staff_conn, {"event": "join_staff_room", "data": "1"})

        hub.publish(staff_room(1), "new_order", {"id": 10})
        hub.publish(table_room(1, 4), "order_update", {"id": 10})
        hub.publish(table_room(1, 5), "order_update", {"id": 11})
        await settle(diner_conn, staff_conn)
        assert hub.members(table_room(1, 4)) == 1
        await hub.shutdown()
        return diner.sent, staff.sent

    diner_sent, staff_sent = asyncio.run(scenario())

    assert events(diner_sent) == ["room_joined", "order_update"]
    assert diner_sent[1]["data"] == {"id": 10}
    assert events(staff_sent) == ["room_joined", "new_order"]


def test_invalid_messages_get_an_error_event():
    async def scenario():
        hub = RoomHub(queue_size=16, offline_grace=0)
        ws = FakeWebSocket()
        conn = hub.connect(ws)
        await hub.handle_message(conn, {"event": "join_table_room", "data": {"tableId": 4}})
        await hub.handle_message(conn, {"event": "join_public_room", "data": None})
        await hub.handle_message(conn, {"event": "dance", "data": 1})
        await hub.handle_message(conn, ["not", "a", "dict"])
        await settle(conn)
        rooms = set(conn.rooms)
        await hub.disconnect(conn)
        return ws.sent, rooms

    sent, rooms = asyncio.run(scenario())

    assert events(sent) == ["error"] * 4
    assert sent[0]["data"]["message"] == "Invalid payload for join_table_room"
    assert rooms == set()


def test_staff_presence_survives_multiple_tabs():
    calls = []

    async def listener(restaurant_id, user_id, online):
        calls.append((restaurant_id, user_id, online))

    async def scenario():
        hub = RoomHub(queue_size=16, offline_grace=0)
        hub.presence_listener = listener
        first, second = FakeWebSocket(), FakeWebSocket()
        c1, c2 = hub.connect(first), hub.connect(second)
        join = {"event": "join_staff_room", "data": {"restaurantId": 3, "userId": 9}}
        await hub.handle_message(c1, join)
        await hub.handle_message(c2, join)
        await settle(c1, c2)
        assert hub.is_user_connected(3, 9)

        await hub.disconnect(c1)
        await settle()
        assert hub.is_user_connected(3, 9)
        after_first = list(calls)

        await hub.disconnect(c2)
        await settle()
        return first.sent, after_first, hub.is_user_connected(3, 9)

    first_sent, after_first, still_connected = asyncio.run(scenario())

    assert [m["data"]["room"] for m in first_sent] == [staff_room(3), user_room(9)]
    assert after_first == [(3, 9, True)]
    assert calls == [(3, 9, True), (3, 9, False)]
    assert still_connected is False


def test_slow_consumer_does_not_block_publishers():
    async def scenario():
        hub = RoomHub(queue_size=1, offline_grace=0)
        slow, fast = StuckWebSocket(), FakeWebSocket()
        slow_conn, fast_conn = hub.connect(slow), hub.connect(fast)
        await hub.handle_message(slow_conn, {"event": "join_public_room", "data": 1})
        await hub.handle_message(fast_conn, {"event": "join_public_room", "data": 1})
        for i in range(5):
            hub.publish(public_room(1), "table:unavailable", {"n": i})
            await settle(fast_conn)
        await hub.shutdown()
        return slow.sent, fast.sent

    slow_sent, fast_sent = asyncio.run(scenario())

    # the stuck client got its ack and nothing more went through
    assert len(slow_sent) == 1
    assert [m["data"] for m in fast_sent[1:]] == [{"n": i} for i in range(5)]


def test_publish_without_a_running_loop_is_a_no_op():
    hub = RoomHub(queue_size=4, offline_grace=0)

    hub.publish(public_room(1), "menu_stock_update", [])


def test_outbox_flushes_in_emission_order():
    published = []

    class Publisher:
        def publish(self, room, event, data):
            published.append((room, event))

    outbox = Outbox(Publisher())
    outbox.emit("order_update", {}, table_room(1, 2), staff_room(1))
    outbox.emit("table_freed", {}, staff_room(1))
    assert len(outbox.pending) == 3
    assert published == []

    outbox.flush()

    assert published == [
        (table_room(1, 2), "order_update"),
        (staff_room(1), "order_update"),
        (staff_room(1), "table_freed"),
    ]
    assert outbox.pending == []


def test_outbox_keeps_going_when_a_publish_fails():
    published = []

    class FlakyPublisher:
        def publish(self, room, event, data):
            if event == "boom":
                raise RuntimeError("socket layer down")
            published.append(event)

    outbox = Outbox(FlakyPublisher())
    outbox.emit("boom", {}, staff_room(1))
    outbox.emit("order_update", {}, staff_room(1))
    outbox.flush()

    assert published == ["order_update"]


def test_owner_room_receives_reviews():
    async def scenario():
        hub = RoomHub(queue_size=16, offline_grace=0)
        ws = FakeWebSocket()
        conn = hub.connect(ws)
        await hub.handle_message(conn, {"event": "join_owner_room", "data": 5})
        hub.publish(owner_room(5), "review_added", {"rating": 5})
        hub.publish(public_room(5), "restaurant_status_update", {"is_open": False})
        await settle(conn)
        await hub.disconnect(conn)
        return ws.sent

    sent = asyncio.run(scenario())

    assert events(sent) == ["room_joined", "review_added"]
    assert sent[0]["data"]["room"] == "restro_owner_5"


def test_binary_and_malformed_frames_get_an_error_event():
    async def scenario():
        hub = RoomHub(queue_size=16, offline_grace=0)
        ws = ScriptedWebSocket([
            {"type": "websocket.receive", "bytes": b"\x00\x01"},
            {"type": "websocket.receive", "text": "{not json"},
            {"type": "websocket.receive", "text": json.dumps({"event": "join_public_room", "data": 1})},
        ])
        await hub.serve(ws)
        return ws, hub.members(public_room(1))

    ws, members_after = asyncio.run(scenario())

    assert ws.accepted
    assert events(ws.sent) == ["error", "error", "room_joined"]
    assert ws.sent[0]["data"]["message"] == "Expected a text frame"
    assert ws.sent[1]["data"]["message"] == "Malformed message"
    assert members_after == 0


def test_shutdown_cancels_pending_offline_checks():
    calls = []

    async def listener(restaurant_id, user_id, online):
        calls.append((restaurant_id, user_id, online))

    async def scenario():
        hub = RoomHub(queue_size=16, offline_grace=60)
        hub.presence_listener = listener
        conn = hub.connect(FakeWebSocket())
        await hub.handle_message(conn, {"event": "join_staff_room", "data": {"restaurantId": 3, "userId": 9}})
        await settle(conn)

        await hub.disconnect(conn)
        pending = list(hub._grace_tasks)
        await hub.shutdown()
        await settle()
        return pending, set(hub._grace_tasks)

    pending, remaining = asyncio.run(scenario())

    assert len(pending) == 1
    assert pending[0].cancelled()
    assert remaining == set()
    assert calls == [(3, 9, True)]
