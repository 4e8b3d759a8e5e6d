from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlparse

import asyncpg

from studio_jobs.config import settings

logger = logging.getLogger("studio_jobs.db")

_POOL: asyncpg.Pool | None = None
_LOCK = asyncio.Lock()


def _dsn_safe(dsn: str) -> str:
    try:
        u = urlparse(dsn)
        host = u.hostname or ""
        port = u.port or ""
        db = (u.path or "").lstrip("/")
        return f"{u.scheme}://***@{host}:{port}/{db}"
    except Exception:
        return "<invalid-dsn>"


async def init_pool() -> asyncpg.Pool:
    global _POOL
    dsn = (settings.DATABASE_URL or "").strip()
    if not dsn:
        raise RuntimeError("DATABASE_URL is required")

    if _POOL is not None:
        return _POOL

    async with _LOCK:
        if _POOL is not None:
            return _POOL

        logger.info("Initializing asyncpg pool: %s", _dsn_safe(dsn))
        _POOL = await asyncpg.create_pool(
            dsn=dsn,
            min_size=settings.DB_POOL_MIN,
            max_size=settings.DB_POOL_MAX,
            command_timeout=settings.DB_COMMAND_TIMEOUT,
        )
        return _POOL


async def get_pool() -> asyncpg.Pool:
    return await init_pool()


async def close_pool() -> None:
    global _POOL
    async with _LOCK:
        if _POOL is None:
            return
        await _POOL.close()
        _POOL = None
        logger.info("asyncpg pool closed")
