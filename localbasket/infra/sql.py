import os
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, AsyncContextManager, Tuple

from sqlalchemy import event
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

# concurrent catalog queries allowed against the pool
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "10"))
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000"))

Gate = Callable[[], AsyncContextManager[None]]


def catalog_db_url(url: str) -> str:
    """Plain ``sqlite:///products.db`` -> the aiosqlite async driver."""
    parsed = make_url(url)
    if parsed.drivername == "sqlite":
        return parsed.set(drivername="sqlite+aiosqlite").render_as_string(
            hide_password=False)
    return url


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    # readers keep going while the catalog is edited from a second process
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
        cur.close()


def make_gate(limit: int = DB_GATE_LIMIT) -> Gate:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated() -> AsyncIterator[None]:
        async with sem:
            yield

    return gated


def make_async_engine(
    database_url: str,
) -> Tuple[AsyncEngine, async_sessionmaker, Gate]:
    db_url = catalog_db_url(database_url)
    engine = create_async_engine(db_url, future=True, pool_pre_ping=True)
    if _is_sqlite(db_url):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, SessionAsync, make_gate()
