import asyncio
import json
import logging
from fastapi import FastAPI, Depends, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from .config import settings
from .db import SessionLocal, init_db
from .models import User
from .schemas import SessionIn, SessionOut, UserOut, RoomCreate, RoomOut, MessageOut, ParticipantOut
from .auth import create_session_token, get_optional_session_id, get_session_id, new_session_id
from .bridge import ChatConnection
from .errors import TallyRoomsError, Unauthorized
from .identity import require_user, resolve_or_create_user
from .logging_config import setup_logging
from . import membership, messages, rooms

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Beer Tally Rooms")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Dependency
async def get_db():
    async with SessionLocal() as session:
        yield session

async def get_current_user(session_id: str = Depends(get_session_id), db: AsyncSession = Depends(get_db)) -> User:
    return await require_user(db, session_id)

@app.exception_handler(TallyRoomsError)
async def domain_error_handler(request: Request, exc: TallyRoomsError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "operation failed"})

@app.on_event("startup")
async def on_startup():
    await init_db()

@app.get("/health")
async def health():
    return {"status": "ok"}

# ---------------------- SESSION ----------------------
@app.post("/session", response_model=SessionOut)
async def start_session(
    payload: SessionIn,
    response: Response,
    session_id: str | None = Depends(get_optional_session_id),
    db: AsyncSession = Depends(get_db),
):
    """Set the display name, creating the user on first contact."""
    if session_id is None:
        session_id = new_session_id()
    user = await resolve_or_create_user(db, session_id, payload.display_name)
    token = create_session_token(session_id)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_expire_minutes * 60,
        httponly=True,
        samesite="lax",
    )
    return SessionOut(token=token, user=UserOut.model_validate(user))

@app.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user)):
    return user

# ---------------------- ROOMS ----------------------
@app.post("/rooms", response_model=RoomOut)
async def create_room(body: RoomCreate, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await rooms.create_room(db, user.id, body.name)

@app.get("/rooms/{code}", response_model=RoomOut)
async def get_room(code: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await rooms.find_active_room_by_code(db, code)

@app.post("/rooms/{code}/join", response_model=RoomOut)
async def join_room(code: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    room = await rooms.find_active_room_by_code(db, code)
    await membership.join(db, user.id, room.id)
    return room

@app.get("/rooms/{code}/messages", response_model=list[MessageOut])
async def room_messages(
    code: str,
    limit: int = Query(settings.history_limit, ge=1, le=settings.history_limit_max),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    room = await rooms.find_active_room_by_code(db, code)
    return await messages.recent_history(db, room.id, limit)

@app.get("/rooms/{code}/participants", response_model=list[ParticipantOut])
async def room_participants(code: str, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    room = await rooms.find_active_room_by_code(db, code)
    return await membership.list_active(db, room.id)

# ---------------------- WEBSOCKETS ----------------------
# Room chat WS: join by code, persist messages, fan out to the room.
@app.websocket("/ws/rooms")
async def ws_rooms(ws: WebSocket):
    token = ws.query_params.get("token") or ws.cookies.get(settings.session_cookie_name)
    conn = ChatConnection(SessionLocal)
    try:
        await conn.authenticate(token)
    except Unauthorized as exc:
        logger.warning("Refused connection %s: %s", conn.connection_id, exc.message)
        await ws.close(code=4401)
        return
    except TallyRoomsError:
        await ws.close(code=1011)
        return

    await ws.accept()
    writer = asyncio.create_task(conn.outbox.drain(ws.send_json))
    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                frame = None
            await conn.handle(frame)
    except WebSocketDisconnect:
        pass
    finally:
        await conn.disconnect()
        writer.cancel()
        await asyncio.gather(writer, return_exceptions=True)
        dropped = conn.outbox.pending()
        if dropped:
            logger.info("Dropped %d undelivered frame(s) for connection %s", len(dropped), conn.connection_id)
