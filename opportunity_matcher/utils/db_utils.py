"""
Database utilities for PostgreSQL connection management.

This module owns the psycopg connection pools used by the pgvector index
and the helpers that bound store calls with a timeout.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Dict, Optional, TypeVar

from pgvector.psycopg import register_vector_async
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from opportunity_matcher.core.config import settings
from opportunity_matcher.core.exceptions import StoreUnavailable
from opportunity_matcher.log.logging import logger

T = TypeVar("T")

# Global connection pools
_connection_pools: Dict[str, AsyncConnectionPool] = {}
_pool_lock = asyncio.Lock()


async def _configure_connection(conn) -> None:
    """Teach every new pooled connection about the ``vector`` type."""
    await register_vector_async(conn)


async def get_connection_pool(
    pool_name: str = "default", conninfo: Optional[str] = None
) -> AsyncConnectionPool:
    """
    Get or create a connection pool for the specified name.

    The first caller for a name decides which database the pool points at.

    Args:
        pool_name: Name of the connection pool
        conninfo: Connection string, defaults to DATABASE_URL

    Returns:
        AsyncConnectionPool: The connection pool
    """
    async with _pool_lock:
        if pool_name not in _connection_pools:
            logger.info("Creating new connection pool", pool_name=pool_name)

            try:
                pool = AsyncConnectionPool(
                    conninfo=conninfo or settings.database_url,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                    timeout=settings.db_pool_timeout,
                    max_idle=settings.db_pool_max_idle,
                    max_lifetime=settings.db_pool_max_lifetime,
                    kwargs={"row_factory": dict_row},
                    configure=_configure_connection,
                    check=AsyncConnectionPool.check_connection,
                    open=False,
                    reconnect_timeout=30,
                )
                await pool.open()

                _connection_pools[pool_name] = pool

                logger.info(
                    "Connection pool created successfully",
                    pool_name=pool_name,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                )
            except Exception as e:
                logger.exception(
                    "Error creating connection pool",
                    pool_name=pool_name,
                    error=str(e),
                )
                raise StoreUnavailable(
                    f"Could not open connection pool {pool_name}",
                    context={"pool_name": pool_name},
                ) from e

        return _connection_pools[pool_name]


@asynccontextmanager
async def get_db_cursor(pool_name: str = "default", conninfo: Optional[str] = None):
    """
    Get a database cursor from a pooled connection.

    The surrounding transaction is committed when the block exits cleanly.

    Args:
        pool_name: Name of the connection pool
        conninfo: Connection string used if the pool does not exist yet

    Yields:
        A database cursor
    """
    start_time = time.time()
    pool = await get_connection_pool(pool_name, conninfo)
    async with pool.connection() as conn:
        async with conn.cursor(row_factory=dict_row) as cursor:
            logger.trace("Cursor acquired", pool_name=pool_name, elapsed=f"{time.time() - start_time:.6f}s")
            yield cursor


async def with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """
    Await a store call, turning a timeout into ``StoreUnavailable``.

    Args:
        awaitable: The store coroutine
        timeout: Bound in seconds
        operation: Label used in the error and logs

    Returns:
        Whatever the awaitable returns
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error("Store operation timed out", operation=operation, timeout=timeout)
        raise StoreUnavailable(
            f"{operation} timed out after {timeout}s", context={"operation": operation}
        ) from e


async def close_all_connection_pools() -> None:
    """Close all connection pools. Errors are logged, never raised."""
    async with _pool_lock:
        for pool_name, pool in _connection_pools.items():
            logger.info("Closing connection pool", pool_name=pool_name)
            try:
                if not pool.closed:
                    await asyncio.wait_for(pool.close(), timeout=3.0)
            except asyncio.TimeoutError:
                logger.warning("Timeout while closing pool", pool_name=pool_name)
            except Exception as e:
                logger.warning("Error closing pool", pool_name=pool_name, error=str(e))

        _connection_pools.clear()
