"""Store connection management for the entity arena and the Redis cache."""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import declarative_base
from redis.asyncio import Redis
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, TypeVar
import asyncio
import logging

from .config import settings
from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

# SQLAlchemy Base for ORM models
Base = declarative_base()

# Global store connections
_engine = None
_session_maker = None
_redis_client = None

T = TypeVar("T")


# ============================================================================
# Engine and Session Management
# ============================================================================

def enable_sqlite_savepoints(engine) -> None:
    """
    Let pysqlite honour SAVEPOINT.

    The driver opens transactions lazily and breaks nested ones, so the
    engine emits BEGIN itself. Arena inserts and order swaps rely on
    savepoints to survive a retried integrity error.
    """
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_engine():
    """
    Get or create the async store engine.

    PostgreSQL behind PgBouncer (port 6432) gets a small application pool,
    a direct PostgreSQL connection a larger one. SQLite URLs (used by the
    test suite) take the driver defaults.
    """
    global _engine
    if _engine is None:
        url = settings.store_url
        kwargs = {"echo": settings.log_level == "DEBUG"}

        if url.startswith("postgresql"):
            is_using_pgbouncer = settings.postgres_port == 6432 or settings.postgres_host == "pgbouncer"
            if is_using_pgbouncer:
                pool_size, max_overflow = 5, 5
                logger.info("Using PgBouncer - configuring small application connection pool")
            else:
                pool_size, max_overflow = 10, 20
                logger.info("Direct PostgreSQL connection - using standard connection pool")
            kwargs.update(
                pool_pre_ping=True,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_recycle=3600,
                pool_timeout=settings.store_timeout,
            )

        _engine = create_async_engine(url, **kwargs)
        if url.startswith("sqlite"):
            enable_sqlite_savepoints(_engine)
        logger.info(f"Store engine created: {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the store session maker."""
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_maker


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for FastAPI to get a store session.

    One transaction per request: committed when the handler returns,
    rolled back when it raises. Cached schema of any namespace the
    transaction changed is dropped once it has ended.

    Usage:
        @app.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_session)):
            # Use db session here
    """
    from .cache import flush_schema_changes

    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await flush_schema_changes(session)


async def close_store():
    """Close store connections."""
    global _engine, _session_maker
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_maker = None
        logger.info("Store connections closed")


# ============================================================================
# Bounded Store Calls
# ============================================================================

def _is_unavailable(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, ConnectionError, OperationalError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


async def _rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except Exception as e:
        logger.warning(f"Rollback before retry failed: {type(e).__name__}: {e}")


async def bounded(
    operation: Callable[[], Awaitable[T]],
    *,
    read: bool = False,
    timeout: Optional[float] = None,
    session: Optional[AsyncSession] = None,
) -> T:
    """
    Run a store operation under the configured timeout.

    Timeouts and connection failures surface as ``StoreUnavailable``.
    Reads are retried ``store_read_retries`` times after a short backoff;
    writes never are, so a mutation is not applied twice. A failed
    transaction is unusable on PostgreSQL, so ``session`` is rolled back
    before each retry, and any store error on a retry is unavailability too.

    Args:
        operation: Zero-argument coroutine factory
        read: True for read-only operations
        timeout: Overrides ``settings.store_timeout``
        session: Session the operation runs in
    """
    attempts = 1 + (settings.store_read_retries if read else 0)
    limit = timeout if timeout is not None else settings.store_timeout

    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(operation(), timeout=limit)
        except Exception as e:
            if not (_is_unavailable(e) or (attempt and isinstance(e, DBAPIError))):
                raise
            logger.warning(f"Store unavailable (attempt {attempt + 1}/{attempts}): {type(e).__name__}")
            if attempt + 1 < attempts:
                if session is not None:
                    await _rollback(session)
                await asyncio.sleep(settings.store_retry_delay * (attempt + 1))
                continue
            raise StoreUnavailable(
                "Backing store did not answer in time",
                {"timeout": limit, "attempts": attempts},
            ) from e


# ============================================================================
# Redis Connection Management
# ============================================================================

def get_redis_client() -> Redis:
    """Get or create Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=50,
        )
        logger.info(f"Redis client created: {settings.redis_host}:{settings.redis_port}")
    return _redis_client


async def close_redis():
    """Close Redis connections."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None
        logger.info("Redis connections closed")


# ============================================================================
# Application Lifecycle Management
# ============================================================================

async def init_databases():
    """Initialize store connections."""
    logger.info("Initializing store connections...")
    get_engine()
    if settings.cache_enabled:
        get_redis_client()
    logger.info("Store connections initialized")


async def close_databases():
    """Close all store connections."""
    logger.info("Closing store connections...")
    await close_store()
    await close_redis()
    logger.info("All store connections closed")


async def create_tables(engine: Any = None):
    """Create the arena tables from the ORM metadata."""
    from . import db_models  # noqa: F401  registers the models on Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Store tables created")
