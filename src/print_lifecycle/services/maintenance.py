"""Periodic maintenance for staged and durable documents.

Each pass:
    1. removes staged files past the retention window
    2. deletes durable copies of completed/cancelled jobs marked
       ``delete_after_print``
    3. retries migration for paid jobs whose upload failed, up to
       ``migration_retry_limit`` attempts per job; after that the job waits
       for an explicit retry
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from print_lifecycle.errors import MigrationError, PrintServiceError
from print_lifecycle.models.notification import NOTIFY_IN_QUEUE
from print_lifecycle.models.print_job import PrintJob
from print_lifecycle.services.durable_storage import DurableStorage, DurableStorageError
from print_lifecycle.services.job_service import JobService
from print_lifecycle.services.migration import CloudMigrationWorker
from print_lifecycle.services.notifications import NotificationDispatcher, event_for
from print_lifecycle.services.scheduler import PrintScheduler
from print_lifecycle.services.staging import StagingStore
from print_lifecycle.states import (
    PAYMENT_COMPLETED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_QUEUE,
    STATUS_PAID,
)

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceReport:
    staged_removed: int = 0
    durable_removed: int = 0
    migrations_retried: int = 0
    migrated: list[str] = field(default_factory=list)


class MaintenanceRunner:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        staging: StagingStore,
        storage: DurableStorage,
        migration: CloudMigrationWorker | None = None,
        scheduler: PrintScheduler | None = None,
        dispatcher: NotificationDispatcher | None = None,
        *,
        job_service: JobService | None = None,
        interval_seconds: float | None = None,
        retention_seconds: float | None = None,
        migration_retry_limit: int | None = None,
    ) -> None:
        from print_lifecycle.config import settings

        self._session_factory = session_factory
        self._staging = staging
        self._storage = storage
        self._migration = migration
        self._scheduler = scheduler
        self._dispatcher = dispatcher
        self._jobs = job_service or JobService()
        self._interval = interval_seconds or settings.sweep_interval_seconds
        self._retention = (
            retention_seconds
            if retention_seconds is not None
            else settings.staging_retention_hours * 3600
        )
        self._retry_limit = (
            migration_retry_limit
            if migration_retry_limit is not None
            else settings.migration_retry_limit
        )
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Background task
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background maintenance task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Maintenance task started", extra={"interval_s": self._interval})

    async def stop(self) -> None:
        """Stop the background maintenance task."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("Maintenance task stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in maintenance loop")

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_once(self) -> MaintenanceReport:
        report = MaintenanceReport()
        report.staged_removed = len(self._staging.sweep(self._retention))
        report.durable_removed = await self.cleanup_durable()
        if self._migration is not None:
            report.migrations_retried, report.migrated = await self.retry_stalled_migrations()
        logger.info(
            "Maintenance pass finished",
            extra={
                "staged_removed": report.staged_removed,
                "durable_removed": report.durable_removed,
                "migrations_retried": report.migrations_retried,
            },
        )
        return report

    async def cleanup_durable(self) -> int:
        """Delete durable copies that are no longer needed. Returns how many."""
        db = self._session_factory()
        removed = 0
        try:
            stmt = select(PrintJob).where(
                PrintJob.status.in_((STATUS_COMPLETED, STATUS_CANCELLED)),
                PrintJob.delete_after_print.is_(True),
                PrintJob.uploaded_to_durable_storage.is_(True),
                PrintJob.durable_deleted.is_(False),
            )
            for job in list(db.scalars(stmt)):
                try:
                    await self._storage.delete(job.storage_object_id)
                except DurableStorageError as exc:
                    logger.warning("Durable cleanup failed for job %s: %s", job.id, exc)
                    continue
                job.durable_deleted = True
                job.cleanup_note = "durable copy removed after printing"
                try:
                    self._jobs.save(db, job)
                except PrintServiceError:
                    logger.warning("Could not record durable cleanup for job %s", job.id)
                    continue
                removed += 1
        finally:
            db.close()
        return removed

    async def retry_stalled_migrations(self) -> tuple[int, list[str]]:
        """Retry migration for paid jobs still waiting on their upload."""
        db = self._session_factory()
        attempted = 0
        migrated: list[str] = []
        try:
            stmt = select(PrintJob.id).where(
                PrintJob.status == STATUS_PAID,
                PrintJob.payment_status == PAYMENT_COMPLETED,
                PrintJob.uploaded_to_durable_storage.is_(False),
                PrintJob.migration_attempts < self._retry_limit,
            )
            for job_id in list(db.scalars(stmt)):
                attempted += 1
                try:
                    await self._migration.migrate(db, job_id)
                except MigrationError as exc:
                    logger.warning("Automatic migration retry failed for job %s: %s", job_id, exc)
                    continue
                migrated.append(job_id)
                job = self._jobs.require(db, job_id)
                if (
                    self._scheduler is not None
                    and job.status == STATUS_IN_QUEUE
                    and self._scheduler.submit(job.id, job.priority)
                    and self._dispatcher is not None
                ):
                    self._dispatcher.dispatch(event_for(job, NOTIFY_IN_QUEUE))
        finally:
            db.close()
        return attempted, migrated
