import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import RoomParticipant, User
from .schemas import ParticipantOut

logger = logging.getLogger(__name__)


async def _get_membership(db: AsyncSession, user_id: int, room_id: int) -> RoomParticipant | None:
    res = await db.execute(
        select(RoomParticipant).where(RoomParticipant.room_id == room_id, RoomParticipant.user_id == user_id)
    )
    return res.scalar_one_or_none()


async def join(db: AsyncSession, user_id: int, room_id: int) -> None:
    """Mark the user present in the room. Idempotent.

    A returning member is reactivated in place, keeping the original
    ``joined_at`` and therefore their slot in the roster.
    """
    membership = await _get_membership(db, user_id, room_id)
    if membership is None:
        db.add(RoomParticipant(room_id=room_id, user_id=user_id, is_active=True))
        try:
            await db.commit()
        except IntegrityError:
            # lost the insert race on (room_id, user_id); the row exists now
            await db.rollback()
            membership = await _get_membership(db, user_id, room_id)
            if membership is None:
                raise
        else:
            logger.info("User %s joined room %s", user_id, room_id)
            return
    if not membership.is_active:
        membership.is_active = True
        await db.commit()
        logger.info("User %s rejoined room %s", user_id, room_id)


async def leave(db: AsyncSession, user_id: int, room_id: int) -> None:
    await db.execute(
        update(RoomParticipant)
        .where(RoomParticipant.room_id == room_id, RoomParticipant.user_id == user_id)
        .values(is_active=False)
    )
    await db.commit()
    logger.info("User %s left room %s", user_id, room_id)


async def list_active(db: AsyncSession, room_id: int) -> list[ParticipantOut]:
    res = await db.execute(
        select(User.id, User.name)
        .join(RoomParticipant, RoomParticipant.user_id == User.id)
        .where(RoomParticipant.room_id == room_id, RoomParticipant.is_active.is_(True))
        .order_by(RoomParticipant.joined_at.asc(), RoomParticipant.id.asc())
    )
    return [ParticipantOut(id=row.id, name=row.name) for row in res]
