from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from .config import settings


class Base(DeclarativeBase):
    pass


def make_engine(url: str, echo: bool = False):
    # aiosqlite connections are bound to the loop that opened them
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, poolclass=NullPool)
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def make_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False)


engine = make_engine(settings.database_url, echo=settings.sql_echo)
SessionLocal = make_session_factory(engine)


async def init_db(bind=None):
    from . import models  # noqa: F401  registers the tables

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
