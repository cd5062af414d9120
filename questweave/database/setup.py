import logging
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import event, text
from .base import Base
from questweave.utils.config import Config

logger = logging.getLogger(__name__)

_engine = None
_sessionmaker = None


def create_engine_for(url: str, *, echo: bool = False):
    """Build an async engine; in-memory SQLite shares one connection across sessions."""
    kwargs = {"echo": echo}
    if url.startswith("sqlite") and ":memory:" in url:
        from sqlalchemy.pool import StaticPool

        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_async_engine(url, **kwargs)
    if url.startswith("sqlite"):
        _enable_sqlite_savepoints(engine)
    return engine


def _enable_sqlite_savepoints(engine) -> None:
    # the sqlite driver delays BEGIN on its own, which breaks SAVEPOINT
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


async def create_schema(engine) -> None:
    # Import models so every table is registered on Base.metadata
    from . import models, unlock_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def build_sessionmaker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
        class_=AsyncSession,
        autoflush=False,
    )


async def init_db(url: str | None = None):
    global _engine, _sessionmaker
    url = url or Config.DATABASE_URL
    try:
        logger.info(f"Initializing row store at {url.split('://')[0]}...")
        _engine = create_engine_for(url, echo=Config.DB_ECHO)

        # Verify connection
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        await create_schema(_engine)
        logger.info("Tables created successfully")

        _sessionmaker = build_sessionmaker(_engine)
        return _engine
    except Exception as e:
        logger.critical(f"Database initialization failed: {str(e)}")
        raise


def get_session_factory():
    if not _sessionmaker:
        raise RuntimeError("Call init_db() first")
    return _sessionmaker


async def close_db():
    global _engine, _sessionmaker
    if _engine:
        await _engine.dispose()
        _engine = None
        _sessionmaker = None
        logger.info("Database connection closed")
