"""Async engine, session factory and declarative base for SQLite or PostgreSQL."""

from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from sendlists.config import Settings, get_settings

settings = get_settings()


def engine_options(settings: Settings) -> dict:
    options = {"echo": settings.debug}
    if settings.is_sqlite:
        # Maintenance runs write from several sessions at once; wait on the file lock
        options["connect_args"] = {"check_same_thread": False, "timeout": settings.sqlite_busy_timeout_seconds}
    else:
        options["pool_size"] = settings.db_pool_size
        options["pool_pre_ping"] = True
    return options


engine = create_async_engine(settings.database_url, **engine_options(settings))

if settings.is_sqlite:

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@event.listens_for(Base, "init", propagate=True)
def _fill_column_defaults(target, args, kwargs):
    """Give new instances their Column defaults before the first flush."""
    for attr in inspect(type(target)).column_attrs:
        if attr.key in kwargs or getattr(target, attr.key, None) is not None:
            continue
        default = attr.columns[0].default
        if default is None or not (default.is_scalar or default.is_callable):
            continue
        value = default.arg(None) if default.is_callable else default.arg
        setattr(target, attr.key, value)


async def get_db():
    async with async_session() as session:
        yield session
