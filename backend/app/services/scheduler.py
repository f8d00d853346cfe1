"""Background housekeeping: purges expired idempotency records.

Uses FastAPI's lifespan context to start/stop an asyncio background loop.
No external dependencies (no Celery, no APScheduler), just a simple
asyncio.sleep loop that fires every `housekeeping_interval_seconds`.

Usage:
    from app.services.scheduler import lifespan
    app = FastAPI(lifespan=lifespan, ...)

Configuration:
    HOUSEKEEPING_INTERVAL_SECONDS=300   (0 disables the loop, via .env)

The same purge is available on demand:  python -m app.cli purge-idempotency
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import settings
from app.database import async_session
from app.utils.cache import close_redis
from app.utils.idempotency import purge_expired

logger = logging.getLogger("nursery.housekeeping")


async def run_housekeeping(session_factory=async_session) -> int:
    """Delete expired idempotency records once.  Returns the number removed."""
    async with session_factory() as db:
        async with db.begin():
            removed = await purge_expired(db)
    if removed:
        logger.info("Purged %d expired idempotency records", removed)
    return removed


async def _housekeeping_loop(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_housekeeping()
        except Exception:
            logger.exception("Unhandled error in idempotency housekeeping")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: start housekeeping on startup, cancel on shutdown."""
    interval = settings.housekeeping_interval_seconds
    task = None
    if interval > 0:
        task = asyncio.create_task(_housekeeping_loop(interval))
        logger.info("Housekeeping started (every %ds)", interval)
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Housekeeping stopped")
        await close_redis()
