"""Per-connection state machine between a live socket and the room services.

States::

    UNAUTHENTICATED --authenticate--> AUTHENTICATED --join-room--> IN_ROOM
                                                        IN_ROOM --send-message--> IN_ROOM
    any --disconnect--> DISCONNECTED

A failed authentication is terminal. Every other failure is reported to the
requesting connection as an ``error`` event and leaves the state unchanged.
The class is transport agnostic: it only pushes frames onto an ``Outbox``.
"""

import enum
import logging
import uuid
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from . import identity, membership, messages, rooms
from .auth import decode_session_token
from .channel import Outbox, RoomChannels, channels as default_channels
from .errors import InvalidState, OperationFailed, TallyRoomsError, Unauthorized
from .schemas import ParticipantOut, RoomOut, RoomSnapshot, UserOut

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    IN_ROOM = "in_room"
    DISCONNECTED = "disconnected"


class ChatConnection:
    def __init__(self, session_factory, channels: RoomChannels | None = None, connection_id: str | None = None):
        self.session_factory = session_factory
        self.channels = channels if channels is not None else default_channels
        self.connection_id = connection_id or uuid.uuid4().hex
        self.state = ConnectionState.UNAUTHENTICATED
        self.user: UserOut | None = None
        self.room: RoomOut | None = None
        self.outbox: Outbox | None = None

    def __repr__(self) -> str:
        return f"<ChatConnection {self.connection_id} {self.state.value}>"

    async def authenticate(self, token: str | None) -> UserOut:
        if self.state is not ConnectionState.UNAUTHENTICATED:
            raise InvalidState("Already authenticated")
        try:
            if not token:
                raise Unauthorized()
            session_id = decode_session_token(token)
            async with self.session_factory() as db:
                user = await identity.require_user(db, session_id)
        except Unauthorized:
            self.state = ConnectionState.DISCONNECTED
            raise
        except SQLAlchemyError as exc:
            logger.exception("Identity lookup failed for connection %s", self.connection_id)
            self.state = ConnectionState.DISCONNECTED
            raise OperationFailed() from exc
        self.user = UserOut.model_validate(user)
        self.outbox = Outbox(self.connection_id, self.user.id)
        self.state = ConnectionState.AUTHENTICATED
        logger.info("Connection %s authenticated as user %s", self.connection_id, self.user.id)
        return self.user

    async def handle(self, frame: Any) -> None:
        """Dispatch one inbound frame, reporting recoverable failures to the sender."""
        if self.state is ConnectionState.DISCONNECTED:
            return
        if self.state is ConnectionState.UNAUTHENTICATED:
            raise Unauthorized()
        if not isinstance(frame, dict):
            self._error("Malformed message")
            return
        mtype = frame.get("type")
        try:
            if mtype == "join-room":
                await self.join_room(frame.get("code"))
            elif mtype == "send-message":
                await self.send_message(frame.get("body"))
            elif mtype == "ping":
                self.outbox.push("pong")
            else:
                self._error("Unknown message")
        except TallyRoomsError as exc:
            self._error(exc.message)
        except SQLAlchemyError:
            logger.exception("%s failed for connection %s", mtype, self.connection_id)
            self._error(OperationFailed.default_message)

    async def join_room(self, code: str) -> RoomSnapshot:
        self._require(ConnectionState.AUTHENTICATED, ConnectionState.IN_ROOM)
        async with self.session_factory() as db:
            room = await rooms.find_active_room_by_code(db, code)
        if self.room is not None and self.room.id == room.id:
            snapshot = await self._snapshot(self.room)
            self.outbox.push("room-joined", snapshot)
            return snapshot

        # The new room is written before the current one is given up, so a
        # failure here leaves the connection where it was.
        self.channels.reserve(room.id, self.user.id)
        try:
            async with self.session_factory() as db:
                await membership.join(db, self.user.id, room.id)
            target = RoomOut.model_validate(room)
            snapshot = await self._snapshot(target)
            if self.room is not None:
                await self._leave_room()
            already_here = self.channels.user_subscribed(room.id, self.user.id)
            self.channels.subscribe(room.id, self.outbox)
        finally:
            self.channels.release(room.id, self.user.id)
        self.room = target
        self.state = ConnectionState.IN_ROOM
        logger.info("Connection %s (user %s) entered room %s", self.connection_id, self.user.id, room.room_code)

        self.outbox.push("room-joined", snapshot)
        if not already_here:
            self.channels.broadcast(
                room.id, "user-joined", ParticipantOut(id=self.user.id, name=self.user.name), exclude=self.connection_id
            )
        self.channels.broadcast(room.id, "participants-updated", snapshot.participants)
        return snapshot

    async def send_message(self, body: str):
        self._require(ConnectionState.IN_ROOM)
        async with self.session_factory() as db:
            saved = await messages.append(db, self.room.id, self.user.id, body)
        # the sender sees its own message through the broadcast, like everyone else
        self.channels.broadcast(self.room.id, "new-message", saved)
        return saved

    async def disconnect(self) -> None:
        if self.state is ConnectionState.DISCONNECTED:
            return
        try:
            if self.room is not None:
                await self._leave_room()
        finally:
            self.state = ConnectionState.DISCONNECTED
            if self.outbox is not None:
                self.outbox.close()
            logger.info("Connection %s closed", self.connection_id)

    async def _snapshot(self, room: RoomOut) -> RoomSnapshot:
        async with self.session_factory() as db:
            history = await messages.recent_history(db, room.id)
            participants = await membership.list_active(db, room.id)
        return RoomSnapshot(room=room, history=history, participants=participants)

    async def _leave_room(self) -> None:
        room, self.room = self.room, None
        self.state = ConnectionState.AUTHENTICATED
        self.channels.unsubscribe(self.connection_id)
        if self.channels.user_connected(room.id, self.user.id):
            # still present through another socket
            return
        participants = None
        try:
            async with self.session_factory() as db:
                await membership.leave(db, self.user.id, room.id)
                if self.channels.user_connected(room.id, self.user.id):
                    # another socket of this user arrived while the leave was written
                    await membership.join(db, self.user.id, room.id)
                    return
                participants = await membership.list_active(db, room.id)
        except SQLAlchemyError:
            logger.exception("Could not record user %s leaving room %s", self.user.id, room.id)
        self.channels.broadcast(room.id, "user-left", ParticipantOut(id=self.user.id, name=self.user.name))
        if participants is not None:
            self.channels.broadcast(room.id, "participants-updated", participants)

    def _require(self, *states: ConnectionState) -> None:
        if self.state not in states:
            if self.state is ConnectionState.AUTHENTICATED:
                raise InvalidState()
            raise InvalidState(f"Not allowed while {self.state.value}")

    def _error(self, message: str) -> None:
        if self.outbox is not None:
            self.outbox.push("error", {"message": message})
