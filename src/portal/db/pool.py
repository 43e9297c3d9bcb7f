"""Database connection pool factory and health check."""

import asyncio
import logging

import asyncpg

from portal.config.settings import AppConfig

logger = logging.getLogger(__name__)


async def create_pool(config: AppConfig) -> asyncpg.Pool:
    """
    Create the database connection pool and run a health check.

    Args:
        config: Application configuration

    Returns:
        asyncpg.Pool: Initialized database connection pool

    Raises:
        asyncpg.PostgresError: If database is unreachable or health check fails
        asyncio.TimeoutError: If connection attempt exceeds 5 seconds
    """
    dsn = str(config.db_dsn)

    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                dsn,
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
            ),
            timeout=5.0,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            "Database connection timed out after 5 seconds. "
            "Ensure PostgreSQL is running and accessible."
        )

    if pool is None:
        raise RuntimeError("Failed to create database pool")

    # Health check
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            if result != 1:
                raise RuntimeError(f"Health check failed: expected 1, got {result}")
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Database health check failed: {e}") from e

    return pool


async def close_pool(pool: asyncpg.Pool) -> None:
    """
    Close the database connection pool.

    Attempts graceful close with a 5-second timeout. If the timeout occurs
    (e.g., due to leaked connections), forces termination to prevent hangs.
    """
    try:
        await asyncio.wait_for(pool.close(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning(
            "Pool close timed out after 5 seconds. "
            "Forcing termination (likely leaked connection)."
        )
        pool.terminate()
