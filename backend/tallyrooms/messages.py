from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import ValidationError
from .models import RoomMessage, User
from .schemas import MessageOut


def clean_body(body) -> str:
    if not isinstance(body, str):
        raise ValidationError("Message must be text")
    cleaned = body.strip()
    if not cleaned:
        raise ValidationError("Message cannot be empty")
    if len(cleaned) > settings.message_max_length:
        raise ValidationError(f"Message cannot exceed {settings.message_max_length} characters")
    return cleaned


def _to_out(msg: RoomMessage, user_name: str) -> MessageOut:
    return MessageOut(
        id=msg.id,
        room_id=msg.room_id,
        user_id=msg.user_id,
        user_name=user_name,
        body=msg.message,
        created_at=msg.created_at,
    )


async def append(db: AsyncSession, room_id: int, user_id: int, body) -> MessageOut:
    """Persist a chat message; nothing is written if the body is invalid."""
    text = clean_body(body)
    m = RoomMessage(room_id=room_id, user_id=user_id, message=text)
    db.add(m)
    await db.commit()
    await db.refresh(m)
    user_name = await db.scalar(select(User.name).where(User.id == user_id))
    return _to_out(m, user_name)


async def recent_history(db: AsyncSession, room_id: int, limit: int | None = None) -> list[MessageOut]:
    """Newest ``limit`` messages of a room, returned oldest-first."""
    if limit is None:
        limit = settings.history_limit
    if limit <= 0:
        return []
    limit = min(limit, settings.history_limit_max)
    res = await db.execute(
        select(RoomMessage, User.name)
        .join(User, RoomMessage.user_id == User.id)
        .where(RoomMessage.room_id == room_id)
        .order_by(RoomMessage.created_at.desc(), RoomMessage.id.desc())
        .limit(limit)
    )
    rows = res.all()
    return [_to_out(msg, name) for msg, name in reversed(rows)]
