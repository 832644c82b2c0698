"""Startup and shutdown sequence for the portal gate.

Kept apart from ``app.main`` so management scripts and tests can reuse the
same steps without building the ASGI app.
"""

import asyncio
import logging

from app.core import async_session_maker, init_db, settings, setup_logging
from app.core.logging import get_logger
from app.middleware import rate_limit_cleanup_loop, session_cleanup_loop
from app.services.security_events import get_security_event_logger

_logger = get_logger("lifespan")


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _logger.error(f"Background task {task.get_name()} failed: {exc}")


async def common_startup(logger: logging.Logger) -> list[asyncio.Task]:
    """Configure logging, persistence and background cleanup.

    Returns the managed background tasks; pass them to ``common_shutdown``.
    """
    setup_logging(
        level=settings.log_level,
        format_type="structured" if settings.is_production else "dev",
    )

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    # Production schemas are owned by Alembic
    if not settings.is_production:
        await init_db()

    get_security_event_logger().set_db_session_factory(async_session_maker)
    logger.info("Security event logger initialized with database")

    tasks: list[asyncio.Task] = []
    for loop in (rate_limit_cleanup_loop(), session_cleanup_loop()):
        task = asyncio.create_task(loop)
        task.add_done_callback(task_done_callback)
        tasks.append(task)
    return tasks


async def common_shutdown(logger: logging.Logger, tasks: list[asyncio.Task]) -> None:
    """Cancel background tasks and persist buffered security events."""
    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    await get_security_event_logger().shutdown()
    logger.info("Security events flushed")
