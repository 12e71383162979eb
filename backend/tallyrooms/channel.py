import asyncio
import logging
from collections import Counter, defaultdict
from typing import Any, Awaitable, Callable, Dict

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class Outbox:
    """Ordered queue of outbound frames for one live connection.

    ``push`` never suspends, so a broadcast lands on every member's outbox in
    the same order; a writer task drains it onto the transport.
    """

    def __init__(self, connection_id: str, user_id: int) -> None:
        self.connection_id = connection_id
        self.user_id = user_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, event: str, data: Any = None) -> None:
        if self.closed:
            return
        self._queue.put_nowait({"type": event, "data": jsonable_encoder(data)})

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    def pending(self) -> list[dict]:
        frames = []
        while not self._queue.empty():
            frame = self._queue.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    async def drain(self, send: Callable[[dict], Awaitable[None]]) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            await send(frame)


class RoomChannels:
    """Process-local broadcast groups, one per room, keyed by connection id.

    This only answers "which live connections get pushed room events";
    whether a user is a member is decided by the persisted memberships.
    """

    def __init__(self) -> None:
        self.rooms: Dict[int, dict[str, Outbox]] = defaultdict(dict)
        self.connections: dict[str, int] = {}
        # (room_id, user_id) pairs with a join still awaiting persistence
        self.joining: Counter = Counter()

    def subscribe(self, room_id: int, outbox: Outbox) -> None:
        self.unsubscribe(outbox.connection_id)
        self.rooms[room_id][outbox.connection_id] = outbox
        self.connections[outbox.connection_id] = room_id

    def unsubscribe(self, connection_id: str) -> int | None:
        room_id = self.connections.pop(connection_id, None)
        if room_id is None:
            return None
        members = self.rooms.get(room_id)
        if members is not None:
            members.pop(connection_id, None)
            if not members:
                self.rooms.pop(room_id, None)
        return room_id

    def room_of(self, connection_id: str) -> int | None:
        return self.connections.get(connection_id)

    def members(self, room_id: int) -> list[Outbox]:
        return list(self.rooms.get(room_id, {}).values())

    def user_subscribed(self, room_id: int, user_id: int) -> bool:
        return any(o.user_id == user_id for o in self.members(room_id))

    def user_connected(self, room_id: int, user_id: int) -> bool:
        """True while the user has a socket in the room or one on its way in."""
        return self.joining[(room_id, user_id)] > 0 or self.user_subscribed(room_id, user_id)

    def reserve(self, room_id: int, user_id: int) -> None:
        self.joining[(room_id, user_id)] += 1

    def release(self, room_id: int, user_id: int) -> None:
        key = (room_id, user_id)
        self.joining[key] -= 1
        if self.joining[key] <= 0:
            del self.joining[key]

    def broadcast(self, room_id: int, event: str, data: Any = None, exclude: str | None = None) -> int:
        sent = 0
        for outbox in self.members(room_id):
            if outbox.connection_id == exclude:
                continue
            outbox.push(event, data)
            sent += 1
        logger.debug("Broadcast %s to %d connection(s) in room %s", event, sent, room_id)
        return sent


channels = RoomChannels()
