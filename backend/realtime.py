"""
Real-time fanout over WebSockets.

Clients join rooms with explicit messages and receive ``{"event", "data"}``
frames for the entities of those rooms. Membership only lives as long as
the connection: nothing is persisted and nothing is replayed, a client that
reconnects re-sends its joins and re-fetches state over HTTP.

``publish`` may be called from any thread (FastAPI runs sync endpoints in a
threadpool). It never blocks: the message is handed to the event loop and
queued per connection, and one writer task per connection sends in queue
order, so two successive events for the same entity reach each subscriber
in emission order.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from fastapi import WebSocket, WebSocketDisconnect

import config

logger = logging.getLogger(__name__)

PresenceListener = Callable[[int, int, bool], Awaitable[None]]


def public_room(restaurant_id) -> str:
    return f"restro_public_{restaurant_id}"


def staff_room(restaurant_id) -> str:
    return f"restro_staff_{restaurant_id}"


def owner_room(restaurant_id) -> str:
    return f"restro_owner_{restaurant_id}"


def table_room(restaurant_id, table_id) -> str:
    return f"table_{restaurant_id}_{table_id}"


def user_room(user_id) -> str:
    return f"user_{user_id}"


class Connection:
    def __init__(self, websocket, queue_size: int):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.rooms: Set[str] = set()
        self.presence_key: Optional[Tuple[int, int]] = None
        self.writer: Optional[asyncio.Task] = None
        self.closed = False


class RoomHub:
    def __init__(self, queue_size: int = None, offline_grace: float = None):
        self.queue_size = queue_size or config.FANOUT_QUEUE_SIZE
        self.offline_grace = config.STAFF_OFFLINE_GRACE_SECONDS if offline_grace is None else offline_grace
        self.presence_listener: Optional[PresenceListener] = None
        self._rooms: Dict[str, Set[Connection]] = {}
        self._connections: Dict[str, Connection] = {}
        self._presence: Dict[Tuple[int, int], int] = {}
        self._grace_tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handlers = {
            "join_public_room": self._join_public_room,
            "join_staff_room": self._join_staff_room,
            "join_owner_room": self._join_owner_room,
            "join_table_room": self._join_table_room,
        }

    # ========== Connections ==========

    def connect(self, websocket) -> Connection:
        """Registers a connection and starts its writer. Must run on the event loop."""
        self._loop = asyncio.get_running_loop()
        conn = Connection(websocket, self.queue_size)
        conn.writer = asyncio.create_task(self._writer(conn))
        self._connections[conn.id] = conn
        logger.debug(f"Socket {conn.id} connected")
        return conn

    async def disconnect(self, conn: Connection) -> None:
        if conn.id not in self._connections:
            return
        del self._connections[conn.id]
        conn.closed = True
        for room in conn.rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(conn)
                if not members:
                    del self._rooms[room]
        conn.rooms.clear()
        if conn.writer is not None:
            conn.writer.cancel()

        if conn.presence_key is not None:
            remaining = self._presence.get(conn.presence_key, 0) - 1
            if remaining > 0:
                self._presence[conn.presence_key] = remaining
            else:
                self._presence.pop(conn.presence_key, None)
                task = asyncio.create_task(self._offline_after_grace(conn.presence_key))
                self._grace_tasks.add(task)
                task.add_done_callback(self._grace_tasks.discard)
        logger.debug(f"Socket {conn.id} disconnected")

    async def serve(self, websocket: WebSocket) -> None:
        """Runs one client connection until it goes away."""
        await websocket.accept()
        conn = self.connect(websocket)
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))
                raw = frame.get("text")
                if raw is None:
                    self._send(conn, "error", {"message": "Expected a text frame"})
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    self._send(conn, "error", {"message": "Malformed message"})
                    continue
                await self.handle_message(conn, message)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(conn)

    async def handle_message(self, conn: Connection, message: Any) -> None:
        if not isinstance(message, dict):
            self._send(conn, "error", {"message": "Malformed message"})
            return
        event = message.get("event")
        handler = self._handlers.get(event)
        if handler is None:
            self._send(conn, "error", {"message": f"Unknown event: {event}"})
            return
        await handler(conn, message.get("data"))

    def members(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def is_user_connected(self, restaurant_id, user_id) -> bool:
        return self._presence.get((str(restaurant_id), str(user_id)), 0) > 0

    # ========== Joins ==========

    def _join(self, conn: Connection, room: str) -> None:
        self._rooms.setdefault(room, set()).add(conn)
        conn.rooms.add(room)
        self._send(conn, "room_joined", {"room": room})
        logger.info(f"Socket {conn.id} joined {room}")

    def _reject(self, conn: Connection, event: str) -> None:
        self._send(conn, "error", {"message": f"Invalid payload for {event}"})

    async def _join_public_room(self, conn, data):
        if not _is_id(data):
            return self._reject(conn, "join_public_room")
        self._join(conn, public_room(data))

    async def _join_owner_room(self, conn, data):
        if not _is_id(data):
            return self._reject(conn, "join_owner_room")
        self._join(conn, owner_room(data))

    async def _join_table_room(self, conn, data):
        if not isinstance(data, dict):
            return self._reject(conn, "join_table_room")
        restaurant_id = data.get("restroId", data.get("restaurantId"))
        table_id = data.get("tableId")
        if not (_is_id(restaurant_id) and _is_id(table_id)):
            return self._reject(conn, "join_table_room")
        self._join(conn, table_room(restaurant_id, table_id))

    async def _join_staff_room(self, conn, data):
        if _is_id(data):
            restaurant_id, user_id = data, None
        elif isinstance(data, dict):
            restaurant_id = data.get("restaurantId", data.get("restroId"))
            user_id = data.get("userId")
        else:
            return self._reject(conn, "join_staff_room")
        if not _is_id(restaurant_id) or (user_id is not None and not _is_id(user_id)):
            return self._reject(conn, "join_staff_room")

        self._join(conn, staff_room(restaurant_id))
        if user_id is not None and conn.presence_key is None:
            key = (str(restaurant_id), str(user_id))
            conn.presence_key = key
            self._join(conn, user_room(user_id))
            first = self._presence.get(key, 0) == 0
            self._presence[key] = self._presence.get(key, 0) + 1
            if first:
                await self._notify_presence(key, True)

    # ========== Presence ==========

    async def _offline_after_grace(self, key) -> None:
        # page refreshes reconnect within the grace period
        if self.offline_grace:
            await asyncio.sleep(self.offline_grace)
        if self._presence.get(key, 0) == 0:
            await self._notify_presence(key, False)

    async def _notify_presence(self, key, online: bool) -> None:
        if self.presence_listener is None:
            return
        restaurant_id, user_id = key
        try:
            await self.presence_listener(int(restaurant_id), int(user_id), online)
        except Exception:
            logger.exception(f"Presence update failed for user {user_id} at restaurant {restaurant_id}")

    # ========== Delivery ==========

    def publish(self, room: str, event: str, data: Any) -> None:
        """Thread-safe, fire-and-forget delivery to every member of ``room``."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._dispatch, room, event, data)
        except RuntimeError:
            # loop shut down between the check and the call
            logger.debug(f"Dropped {event} for {room}: event loop closed")

    def _dispatch(self, room: str, event: str, data: Any) -> None:
        for conn in list(self._rooms.get(room, ())):
            self._send(conn, event, data)

    def _send(self, conn: Connection, event: str, data: Any) -> None:
        if conn.closed:
            return
        try:
            conn.queue.put_nowait({"event": event, "data": data})
        except asyncio.QueueFull:
            logger.warning(f"Socket {conn.id} is not keeping up, dropped {event}")

    async def _writer(self, conn: Connection) -> None:
        while True:
            message = await conn.queue.get()
            try:
                await conn.websocket.send_json(message)
            except Exception as e:
                # unreachable client: stop writing, the reader side cleans up
                logger.debug(f"Socket {conn.id} send failed: {e}")
                conn.closed = True
                conn.queue.task_done()
                return
            conn.queue.task_done()

    async def shutdown(self) -> None:
        for conn in list(self._connections.values()):
            await self.disconnect(conn)
        for task in list(self._grace_tasks):
            task.cancel()
        self._grace_tasks.clear()
        self._loop = None


def _is_id(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and value.strip() != "" and len(value) <= 64


class Outbox:
    """
    Collects the events of one mutation. Services flush it after the commit,
    while still holding the entity lock, so emission order follows commit
    order.
    """

    def __init__(self, publisher=None):
        self._publisher = publisher
        self._pending = []

    def emit(self, event: str, data: Any, *rooms: str) -> None:
        for room in rooms:
            self._pending.append((room, event, data))

    def flush(self) -> None:
        publisher = self._publisher or hub
        pending, self._pending = self._pending, []
        for room, event, data in pending:
            try:
                publisher.publish(room, event, data)
            except Exception:
                logger.exception(f"Failed to publish {event} to {room}")

    @property
    def pending(self):
        return list(self._pending)


hub = RoomHub()
