import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from tallyrooms import membership, messages, rooms
from tallyrooms.bridge import ChatConnection, ConnectionState
from tallyrooms.errors import Unauthorized
from tallyrooms.models import RoomMessage, RoomParticipant


@pytest.fixture
def connect(session_factory, channels, token_for):
    async def _connect(user):
        conn = ChatConnection(session_factory, channels)
        await conn.authenticate(token_for(user))
        return conn

    return _connect


@pytest.fixture
async def trivia(session_factory, make_user):
    alice = await make_user("Alice")
    bob = await make_user("Bob")
    async with session_factory() as db:
        room = await rooms.create_room(db, alice.id, "Trivia Night")
    return alice, bob, room


def frames(conn):
    return conn.outbox.pending()


def types(conn):
    return [f["type"] for f in frames(conn)]


async def is_active(session_factory, user_id, room_id):
    async with session_factory() as db:
        return bool(
            await db.scalar(
                select(RoomParticipant.is_active).where(
                    RoomParticipant.user_id == user_id, RoomParticipant.room_id == room_id
                )
            )
        )


async def db_down(*args, **kwargs):
    raise OperationalError("INSERT", {}, Exception("db down"))


async def test_authenticate_rejects_missing_and_bad_tokens(session_factory, channels, token_for):
    for token in (None, "", "garbage"):
        conn = ChatConnection(session_factory, channels)
        with pytest.raises(Unauthorized):
            await conn.authenticate(token)
        assert conn.state is ConnectionState.DISCONNECTED


async def test_authenticate_rejects_unknown_session(session_factory, channels):
    from tallyrooms.auth import create_session_token, new_session_id

    conn = ChatConnection(session_factory, channels)
    with pytest.raises(Unauthorized):
        await conn.authenticate(create_session_token(new_session_id()))
    assert conn.state is ConnectionState.DISCONNECTED


async def test_authenticate_moves_to_authenticated(connect, make_user):
    alice = await make_user("Alice")
    conn = await connect(alice)
    assert conn.state is ConnectionState.AUTHENTICATED
    assert conn.user.id == alice.id
    assert conn.user.name == "Alice"


async def test_handle_before_authentication_is_refused(session_factory, channels):
    conn = ChatConnection(session_factory, channels)
    with pytest.raises(Unauthorized):
        await conn.handle({"type": "ping"})


async def test_join_with_lowercase_code_updates_roster(connect, trivia):
    alice, bob, room = trivia
    a = await connect(alice)
    await a.handle({"type": "join-room", "code": room.room_code})
    assert a.state is ConnectionState.IN_ROOM
    joined = frames(a)
    assert [f["type"] for f in joined] == ["room-joined", "participants-updated"]
    assert joined[0]["data"]["room"]["room_code"] == room.room_code
    assert joined[0]["data"]["history"] == []

    b = await connect(bob)
    await b.handle({"type": "join-room", "code": room.room_code.lower()})

    b_frames = frames(b)
    assert [f["type"] for f in b_frames] == ["room-joined", "participants-updated"]
    assert [p["name"] for p in b_frames[0]["data"]["participants"]] == ["Alice", "Bob"]

    a_frames = frames(a)
    assert [f["type"] for f in a_frames] == ["user-joined", "participants-updated"]
    assert a_frames[0]["data"] == {"id": bob.id, "name": "Bob"}
    assert [p["name"] for p in a_frames[1]["data"]] == ["Alice", "Bob"]


async def test_join_replays_history_oldest_first(connect, trivia, session_factory):
    alice, bob, room = trivia
    async with session_factory() as db:
        await messages.append(db, room.id, alice.id, "first")
        await messages.append(db, room.id, alice.id, "second")

    b = await connect(bob)
    snapshot = await b.join_room(room.room_code)
    assert [m.body for m in snapshot.history] == ["first", "second"]
    assert frames(b)[0]["data"]["history"][1]["user_name"] == "Alice"


async def test_message_is_broadcast_to_everyone_including_sender(connect, trivia):
    alice, bob, room = trivia
    a = await connect(alice)
    b = await connect(bob)
    await a.handle({"type": "join-room", "code": room.room_code})
    await b.handle({"type": "join-room", "code": room.room_code})
    frames(a), frames(b)

    await a.handle({"type": "send-message", "body": "earlier"})
    await a.handle({"type": "send-message", "body": "hello"})

    for conn in (a, b):
        received = frames(conn)
        assert [f["type"] for f in received] == ["new-message", "new-message"]
        assert [f["data"]["body"] for f in received] == ["earlier", "hello"]
        assert received[1]["data"]["user_name"] == "Alice"
        assert received[1]["data"]["user_id"] == alice.id


async def test_invalid_message_is_reported_to_sender_only(connect, trivia, session_factory):
    alice, bob, room = trivia
    a = await connect(alice)
    b = await connect(bob)
    await a.join_room(room.room_code)
    await b.join_room(room.room_code)
    frames(a), frames(b)

    await a.handle({"type": "send-message", "body": "   "})
    await a.handle({"type": "send-message", "body": "x" * 501})

    errors = frames(a)
    assert [f["type"] for f in errors] == ["error", "error"]
    assert errors[0]["data"]["message"] == "Message cannot be empty"
    assert frames(b) == []
    assert a.state is ConnectionState.IN_ROOM
    async with session_factory() as db:
        assert await db.scalar(select(func.count()).select_from(RoomMessage)) == 0


async def test_send_before_join_is_an_error(connect, make_user):
    alice = await make_user("Alice")
    a = await connect(alice)
    await a.handle({"type": "send-message", "body": "hello?"})
    assert frames(a) == [{"type": "error", "data": {"message": "Join a room first"}}]
    assert a.state is ConnectionState.AUTHENTICATED


async def test_unknown_room_keeps_connection_usable(connect, trivia):
    alice, bob, room = trivia
    b = await connect(bob)
    await b.handle({"type": "join-room", "code": "NOPE00"})
    assert frames(b) == [{"type": "error", "data": {"message": "Room not found"}}]
    assert b.state is ConnectionState.AUTHENTICATED

    await b.handle({"type": "join-room", "code": room.room_code})
    assert b.state is ConnectionState.IN_ROOM


async def test_disconnect_announces_departure(connect, trivia, session_factory, channels):
    alice, bob, room = trivia
    a = await connect(alice)
    b = await connect(bob)
    await a.join_room(room.room_code)
    await b.join_room(room.room_code)
    frames(a)

    await b.disconnect()

    received = frames(a)
    assert [f["type"] for f in received] == ["user-left", "participants-updated"]
    assert received[0]["data"] == {"id": bob.id, "name": "Bob"}
    assert [p["id"] for p in received[1]["data"]] == [alice.id]
    assert b.state is ConnectionState.DISCONNECTED
    assert channels.room_of(b.connection_id) is None
    assert not await is_active(session_factory, bob.id, room.id)


async def test_disconnect_is_idempotent_and_silences_connection(connect, trivia):
    alice, bob, room = trivia
    b = await connect(bob)
    await b.join_room(room.room_code)
    await b.disconnect()
    await b.disconnect()
    await b.handle({"type": "ping"})
    assert frames(b) == []


async def test_second_socket_keeps_user_present(connect, trivia, session_factory):
    alice, bob, room = trivia
    a = await connect(alice)
    b1 = await connect(bob)
    b2 = await connect(bob)
    await a.join_room(room.room_code)
    await b1.join_room(room.room_code)
    frames(a), frames(b1)

    await b2.join_room(room.room_code)
    assert types(a) == ["participants-updated"]
    assert types(b1) == ["participants-updated"]
    assert types(b2) == ["room-joined", "participants-updated"]

    await b1.disconnect()
    assert frames(a) == []
    assert await is_active(session_factory, bob.id, room.id)

    await b2.disconnect()
    assert types(a) == ["user-left", "participants-updated"]


async def test_joining_another_room_leaves_the_first(connect, trivia, session_factory):
    alice, bob, room = trivia
    async with session_factory() as db:
        other = await rooms.create_room(db, bob.id, "Karaoke")
    a = await connect(alice)
    b = await connect(bob)
    await a.join_room(room.room_code)
    await b.join_room(room.room_code)
    frames(a), frames(b)

    await b.handle({"type": "join-room", "code": other.room_code})

    assert types(a) == ["user-left", "participants-updated"]
    b_frames = frames(b)
    assert [f["type"] for f in b_frames] == ["room-joined", "participants-updated"]
    assert b_frames[0]["data"]["room"]["id"] == other.id
    assert b.room.id == other.id

    await b.handle({"type": "send-message", "body": "over here"})
    assert frames(a) == []


async def test_rejoining_current_room_only_refreshes_requester(connect, trivia):
    alice, bob, room = trivia
    a = await connect(alice)
    b = await connect(bob)
    await a.join_room(room.room_code)
    await b.join_room(room.room_code)
    frames(a), frames(b)

    await b.handle({"type": "join-room", "code": room.room_code})

    assert types(b) == ["room-joined"]
    assert frames(a) == []


async def test_ping_and_unknown_frames(connect, make_user):
    alice = await make_user("Alice")
    a = await connect(alice)
    await a.handle({"type": "ping"})
    await a.handle({"type": "dance"})
    await a.handle(["not", "a", "dict"])
    assert frames(a) == [
        {"type": "pong", "data": None},
        {"type": "error", "data": {"message": "Unknown message"}},
        {"type": "error", "data": {"message": "Malformed message"}},
    ]


async def test_failed_move_keeps_the_current_room(connect, trivia, session_factory, channels, monkeypatch):
    alice, bob, room = trivia
    async with session_factory() as db:
        other = await rooms.create_room(db, alice.id, "Karaoke")
    a = await connect(alice)
    b = await connect(bob)
    await a.join_room(room.room_code)
    await b.join_room(room.room_code)
    frames(a), frames(b)

    monkeypatch.setattr(membership, "join", db_down)
    await b.handle({"type": "join-room", "code": other.room_code})

    assert frames(b) == [{"type": "error", "data": {"message": "operation failed"}}]
    assert frames(a) == []
    assert b.state is ConnectionState.IN_ROOM
    assert b.room.id == room.id
    assert channels.room_of(b.connection_id) == room.id
    assert channels.joining == {}
    assert await is_active(session_factory, bob.id, room.id)
    assert not await is_active(session_factory, bob.id, other.id)

    monkeypatch.undo()
    await b.handle({"type": "send-message", "body": "still here"})
    assert types(a) == ["new-message"]


async def test_database_error_on_send_is_reported_and_recoverable(connect, trivia, session_factory, monkeypatch):
    alice, bob, room = trivia
    a = await connect(alice)
    b = await connect(bob)
    await a.join_room(room.room_code)
    await b.join_room(room.room_code)
    frames(a), frames(b)

    monkeypatch.setattr(messages, "append", db_down)
    await b.handle({"type": "send-message", "body": "lost"})

    assert frames(b) == [{"type": "error", "data": {"message": "operation failed"}}]
    assert frames(a) == []
    assert b.state is ConnectionState.IN_ROOM

    monkeypatch.undo()
    await b.handle({"type": "send-message", "body": "found"})
    assert [f["data"]["body"] for f in frames(a)] == ["found"]


async def test_leave_spares_a_socket_still_joining(connect, trivia, session_factory, channels):
    alice, bob, room = trivia
    a = await connect(alice)
    b = await connect(bob)
    await a.join_room(room.room_code)
    await b.join_room(room.room_code)
    frames(a)

    channels.reserve(room.id, bob.id)
    await b.disconnect()

    assert frames(a) == []
    assert await is_active(session_factory, bob.id, room.id)


async def test_socket_arriving_during_leave_restores_membership(connect, trivia, session_factory, channels, monkeypatch):
    alice, bob, room = trivia
    a = await connect(alice)
    b = await connect(bob)
    await a.join_room(room.room_code)
    await b.join_room(room.room_code)
    frames(a)

    real_leave = membership.leave

    async def leave_then_reconnect(db, user_id, room_id):
        await real_leave(db, user_id, room_id)
        channels.reserve(room_id, user_id)

    monkeypatch.setattr(membership, "leave", leave_then_reconnect)
    await b.disconnect()

    assert frames(a) == []
    assert await is_active(session_factory, bob.id, room.id)
    assert b.state is ConnectionState.DISCONNECTED
