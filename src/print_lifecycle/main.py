"""Process wiring for the print lifecycle service.

``lifespan()`` is what a host application (web framework, worker process)
enters once at startup:

    async with lifespan() as lifecycle:
        ...  # hand ``lifecycle`` to request handlers

It configures logging, creates tables, starts the print scheduler and the
maintenance loop, and stops both on exit.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from sqlalchemy.orm import Session

from print_lifecycle.config import settings
from print_lifecycle.logging_config import configure_logging
from print_lifecycle.services.lifecycle import PrintLifecycle, build_lifecycle
from print_lifecycle.services.maintenance import MaintenanceRunner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(
    session_factory: Callable[[], Session] | None = None,
) -> AsyncIterator[PrintLifecycle]:
    """Run the service for the duration of the block.

    Without ``session_factory`` the configured database is used and its
    tables are created first.
    """
    configure_logging(level=settings.log_level)
    logger.info("Print lifecycle service starting up")
    if session_factory is None:
        from print_lifecycle.database import SessionLocal, init_db

        init_db()
        logger.info("Database initialised")
        session_factory = SessionLocal

    lifecycle = build_lifecycle(session_factory)
    maintenance = MaintenanceRunner(
        session_factory,
        lifecycle.staging,
        lifecycle.storage,
        migration=lifecycle.migration,
        scheduler=lifecycle.scheduler,
        dispatcher=lifecycle.dispatcher,
    )
    lifecycle.scheduler.start()
    await maintenance.start()
    try:
        yield lifecycle
    finally:
        logger.info("Print lifecycle service shutting down")
        await maintenance.stop()
        await lifecycle.scheduler.stop()
        await lifecycle.dispatcher.drain()
