"""Room directory: short-code generation and lookup.

Room codes are six characters drawn from ``A-Z0-9`` and double as bearer
tokens: anyone holding an active room's code may join it.
"""

import logging
import secrets
import string
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import membership
from .config import settings
from .errors import ResourceExhausted, RoomNotFound, ValidationError
from .models import Room

logger = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_room_code(length: int | None = None) -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length or settings.room_code_length))


def normalize_room_code(code) -> str:
    if not isinstance(code, str):
        return ""
    return code.strip().upper()


def clean_room_name(name) -> str:
    cleaned = name.strip() if isinstance(name, str) else ""
    if not cleaned:
        raise ValidationError("Room name is required")
    if len(cleaned) > settings.room_name_max_length:
        raise ValidationError(f"Room name cannot exceed {settings.room_name_max_length} characters")
    return cleaned


async def _code_taken(db: AsyncSession, code: str) -> bool:
    res = await db.execute(select(Room.id).where(Room.room_code == code))
    return res.first() is not None


async def create_room(
    db: AsyncSession,
    creator_id: int,
    name: str,
    code_factory: Callable[[], str] = generate_room_code,
) -> Room:
    """Create an active room under a fresh code and enrol its creator.

    The existence check and the insert are not atomic; a unique-constraint
    violation on insert counts as a collision and uses up an attempt.
    """
    room_name = clean_room_name(name)
    for attempt in range(1, settings.room_code_max_attempts + 1):
        code = code_factory()
        if await _code_taken(db, code):
            logger.debug("Room code collision on attempt %d", attempt)
            continue
        room = Room(room_code=code, name=room_name, creator_id=creator_id, is_active=True)
        db.add(room)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.debug("Room code %s inserted concurrently (attempt %d)", code, attempt)
            continue
        await db.refresh(room)
        logger.info("User %s created room %s (%s)", creator_id, room.id, room.room_code)
        await membership.join(db, creator_id, room.id)
        return room
    logger.error("Gave up generating a room code after %d attempts", settings.room_code_max_attempts)
    raise ResourceExhausted()


async def find_active_room_by_code(db: AsyncSession, code: str) -> Room:
    normalized = normalize_room_code(code)
    if not normalized:
        raise RoomNotFound()
    res = await db.execute(select(Room).where(Room.room_code == normalized, Room.is_active.is_(True)))
    room = res.scalar_one_or_none()
    if not room:
        raise RoomNotFound()
    return room
