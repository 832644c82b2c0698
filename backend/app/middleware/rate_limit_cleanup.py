"""Background cleanup tasks for the in-process rate limiter and session registry."""

import asyncio
import logging

from app.middleware.rate_limit import get_rate_limiter
from app.services.sessions import get_session_store

logger = logging.getLogger(__name__)


async def rate_limit_cleanup_loop(interval_seconds: int = 3600) -> None:
    """Periodic cleanup of inactive rate limit buckets to prevent memory leaks."""
    rate_limiter = get_rate_limiter()
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            removed = await rate_limiter.cleanup(max_age_seconds=86400)
            if removed > 0:
                logger.debug(f"Rate limiter cleanup: removed {removed} inactive buckets")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Rate limiter cleanup error: {e}")


async def session_cleanup_loop(interval_seconds: int = 900) -> None:
    """Periodic purge of expired and long-invalidated sessions."""
    sessions = get_session_store()
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            removed = await sessions.cleanup_expired()
            if removed > 0:
                logger.debug(f"Session cleanup: removed {removed} stale sessions")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Session cleanup error: {e}")
