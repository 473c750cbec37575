"""Async SQLAlchemy engine & session — supports SQLite and PostgreSQL."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from eventrelay.config import Settings


class Base(DeclarativeBase):
    pass


@event.listens_for(Base, "init", propagate=True)
def _apply_defaults(target, args, kwargs):
    """Apply Column defaults at Python level right after __init__."""
    from sqlalchemy import inspect as sa_inspect

    mapper = sa_inspect(type(target))
    for col_attr in mapper.column_attrs:
        key = col_attr.key
        if key in kwargs or getattr(target, key, None) is not None:
            continue
        col = col_attr.columns[0]
        if col.default is None or not col.default.is_scalar and not col.default.is_callable:
            continue
        arg = col.default.arg
        if col.default.is_callable:
            # SQLAlchemy wraps zero-arg callables to accept an execution context
            setattr(target, key, arg(None))
        else:
            setattr(target, key, arg)


def create_engine(settings: Settings) -> AsyncEngine:
    # SQLite needs connect_args for async; PostgreSQL uses pool_size
    if settings.is_sqlite:
        return create_async_engine(
            settings.database_url,
            echo=settings.debug,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=10,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    # Models register themselves on Base.metadata at import
    import eventrelay.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

