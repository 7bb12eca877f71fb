import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from reservation_service.config import get_settings
from reservation_service.errors import StorageUnavailable, TransientContention

logger = logging.getLogger(__name__)

Base = declarative_base()

# lock_not_available, serialization_failure, deadlock_detected
TRANSIENT_SQLSTATES = {"55P03", "40001", "40P01"}
TRANSIENT_MESSAGES = ("database is locked", "lock timeout", "deadlock")

engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker] = None
lock_timeout: Optional[int] = None


def _enable_sqlite_locking(sync_engine):
    # SQLite has no row locks: take the database write lock when the transaction starts.
    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def configure(
    database_url: Optional[str] = None,
    echo: Optional[bool] = None,
    lock_timeout_ms: Optional[int] = None,
) -> AsyncEngine:
    global engine, SessionLocal, lock_timeout
    settings = get_settings()
    url = database_url or settings.database_url
    echo = settings.sql_echo if echo is None else echo
    lock_timeout = settings.lock_timeout_ms if lock_timeout_ms is None else int(lock_timeout_ms)

    if url.startswith("sqlite"):
        # The busy timeout is the only bounded lock wait SQLite has.
        engine = create_async_engine(url, echo=echo, connect_args={"timeout": lock_timeout / 1000})
        _enable_sqlite_locking(engine.sync_engine)
    else:
        engine = create_async_engine(url, echo=echo, pool_pre_ping=True)

    SessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    logger.info("Database configured for dialect %s", engine.dialect.name)
    return engine


def get_engine() -> AsyncEngine:
    if engine is None:
        configure()
    return engine


async def init_db():
    # Models must be imported so their tables are registered on Base.metadata.
    from reservation_service import models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose():
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None


def classify_db_error(exc: DBAPIError) -> Exception:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(orig).lower()
    if code in TRANSIENT_SQLSTATES or any(fragment in message for fragment in TRANSIENT_MESSAGES):
        return TransientContention(str(orig))
    return StorageUnavailable(str(orig))


@asynccontextmanager
async def transaction():
    """Run the body in one transaction; commit on exit, roll back on any error.

    Integrity errors are re-raised untouched because their meaning depends on the
    caller. Every other driver error becomes TransientContention or StorageUnavailable.
    """
    current = get_engine()
    try:
        async with SessionLocal() as session:
            async with session.begin():
                if current.dialect.name == "postgresql":
                    await session.execute(text(f"SET LOCAL lock_timeout = {lock_timeout}"))
                yield session
    except IntegrityError:
        raise
    except DBAPIError as exc:
        error = classify_db_error(exc)
        if isinstance(error, TransientContention):
            logger.warning("Transaction hit contention: %s", error)
        else:
            logger.error("Storage failure: %s", error, exc_info=True)
        raise error from exc
    except OSError as exc:
        logger.error("Storage unreachable: %s", exc, exc_info=True)
        raise StorageUnavailable(str(exc)) from exc
