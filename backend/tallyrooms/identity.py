"""Identity resolution: opaque session id -> persisted user."""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import Unauthorized, ValidationError
from .models import User

logger = logging.getLogger(__name__)


def clean_display_name(name: str) -> str:
    cleaned = (name or "").strip()[: settings.display_name_max_length]
    if not cleaned:
        raise ValidationError("Name is required")
    return cleaned


async def get_user_by_session(db: AsyncSession, session_id: str) -> User | None:
    res = await db.execute(select(User).where(User.session_id == session_id))
    return res.scalar_one_or_none()


async def require_user(db: AsyncSession, session_id: str | None) -> User:
    if not session_id:
        raise Unauthorized()
    user = await get_user_by_session(db, session_id)
    if user is None:
        raise Unauthorized("Unknown session")
    return user


async def resolve_or_create_user(db: AsyncSession, session_id: str, display_name: str | None = None) -> User:
    """Return the user bound to ``session_id``, creating it on first contact.

    A display name is required to create a user. Passing one for a known
    session renames that user; past messages pick up the new name because
    authorship is resolved at read time.
    """
    name = clean_display_name(display_name) if display_name is not None else None
    user = await get_user_by_session(db, session_id)
    if user is None:
        if name is None:
            raise Unauthorized("Unknown session")
        user = User(session_id=session_id, name=name)
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # another request created the same session concurrently
            await db.rollback()
            user = await get_user_by_session(db, session_id)
            if user is None:
                raise
        else:
            await db.refresh(user)
            logger.info("Created user %s", user.id)
            return user
    if name is not None and user.name != name:
        user.name = name
        await db.commit()
        await db.refresh(user)
        logger.info("Renamed user %s", user.id)
    return user
