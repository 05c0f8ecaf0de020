"""
The pooled connections to the relational store.

All the workers share one SQLAlchemy async engine with a strictly bounded
pool of connections. A connection is taken from the pool for the duration
of one transaction only: the workers never hold a connection while waiting
for the API or for the external engine.

The storage functions themselves are synchronous and get a plain
:class:`sqlalchemy.engine.Connection`; they are executed via ``run_sync()``
of the async connection, so they stay usable in any context.
"""
import asyncio
import logging
import pathlib
from typing import Any, Callable, Optional, TypeVar, Union

from sqlalchemy import event
from sqlalchemy.engine import URL, Connection
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from gitopsd._cogs.storage import schema

logger = logging.getLogger(__name__)

_T = TypeVar('_T')


def build_url(path: Union[str, pathlib.Path]) -> str:
    url = URL.create(drivername='sqlite+aiosqlite', database=str(path))
    return url.render_as_string(hide_password=False)


def create_engine(
        *,
        path: Union[str, pathlib.Path],
        pool_size: int,
        busy_timeout: float,
) -> AsyncEngine:
    engine = create_async_engine(
        build_url(path),
        poolclass=AsyncAdaptedQueuePool,
        pool_size=pool_size,
        max_overflow=0,  # strictly bounded
        pool_pre_ping=True,
        connect_args={'timeout': busy_timeout},
    )
    event.listen(engine.sync_engine, 'connect', _configure_connection)
    event.listen(engine.sync_engine, 'begin', _begin_immediate)
    return engine


def _configure_connection(dbapi_connection: Any, connection_record: Any) -> None:
    # The driver must not begin the transactions on its own: see _begin_immediate().
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute('PRAGMA journal_mode=WAL')
    finally:
        cursor.close()


def _begin_immediate(conn: Connection) -> None:
    # Immediate transactions take the write lock at start, so that the reads
    # and the writes in one function are consistent across the connections.
    conn.exec_driver_sql('BEGIN IMMEDIATE')


class Database:
    """
    A bounded pool of connections to one database file.

    Usage::

        async with Database(path='gitopsd.sqlite') as db:
            mapping = await db.run(mappings.get_by_uid, api_resource_type=..., api_resource_uid=...)

    Every call of :meth:`run` is one transaction: it is committed if the function
    succeeds, and rolled back if it fails. The function gets the connection
    as its first positional argument.
    """

    def __init__(
            self,
            *,
            path: Union[str, pathlib.Path],
            pool_size: int = 4,
            busy_timeout: float = 5.0,
    ) -> None:
        super().__init__()
        self._path = pathlib.Path(path)
        self._pool_size = pool_size
        self._busy_timeout = busy_timeout
        self._engine: Optional[AsyncEngine] = None

    async def __aenter__(self) -> "Database":
        await self.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def path(self) -> pathlib.Path:
        return self._path

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("The database is not opened.")
        return self._engine

    async def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(path=self._path, pool_size=self._pool_size, busy_timeout=self._busy_timeout)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(schema.metadata.create_all)
        except BaseException:
            await engine.dispose()
            raise
        self._engine = engine
        logger.debug(f"Opened the database at {str(self._path)!r} with {self._pool_size} connections.")

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    async def run(self, fn: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
        """
        Run a storage function in one transaction on one of the pooled connections.
        """
        task = asyncio.ensure_future(self._transact(self.engine, fn, *args, **kwargs))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The driver's thread cannot be interrupted: let the transaction finish first.
            await asyncio.wait([task])
            raise

    @staticmethod
    async def _transact(engine: AsyncEngine, fn: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
        async with engine.begin() as conn:
            return await conn.run_sync(fn, *args, **kwargs)
