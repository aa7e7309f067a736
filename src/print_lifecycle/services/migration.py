"""Cloud migration worker: moves a paid job's file from staging to durable storage.

Order of writes for one job:
    1. upload the staged file as ``print_{job_id}`` (same id on every retry)
    2. commit storage ref + ``uploaded_to_durable_storage`` + ``in_queue``
    3. delete the staged copy, then commit ``deleted_from_staging``

A crash between 2 and 3 leaves an orphaned staged file that the staging
sweep removes later; the job itself is never lost.
"""

import logging
from pathlib import Path

from sqlalchemy.orm import Session

from print_lifecycle.errors import (
    ConcurrentModification,
    MigrationError,
    PrintServiceError,
)
from print_lifecycle.logging_config import bind_job_id
from print_lifecycle.models.print_job import PrintJob
from print_lifecycle.services.durable_storage import DurableStorage, StoredObject
from print_lifecycle.services.job_service import JobService
from print_lifecycle.services.staging import StagingStore
from print_lifecycle.states import PAYMENT_COMPLETED, STATUS_IN_QUEUE

logger = logging.getLogger(__name__)


def object_id_for(job_id: str) -> str:
    return f"print_{job_id}"


class CloudMigrationWorker:
    """Exactly-once migration of a job's document, safe to call repeatedly."""

    def __init__(
        self,
        storage: DurableStorage,
        staging: StagingStore,
        job_service: JobService | None = None,
        folder: str | None = None,
    ) -> None:
        from print_lifecycle.config import settings

        self._storage = storage
        self._staging = staging
        self._jobs = job_service or JobService()
        self._folder = folder or settings.durable_folder

    async def migrate(self, db: Session, job_id: str) -> dict:
        """Upload the staged file and queue the job. Returns the storage ref.

        Raises ``MigrationError`` when the job is not paid, its staged file is
        missing, or the upload fails. In every failure case the job stays
        ``paid`` and the staged file is kept.
        """
        job = self._jobs.require(db, job_id)
        with bind_job_id(job.id):
            if job.uploaded_to_durable_storage:
                logger.info("Job %s already migrated, nothing to do", job.id)
                return job.storage_ref

            if job.payment_status != PAYMENT_COMPLETED:
                raise MigrationError("Job is not paid; refusing to migrate", job.id)

            if not self._staging.exists(job.staging_path):
                self._record_failure(db, job, "Staged file is missing")
                raise MigrationError("Staged file is missing", job.id)

            staged = Path(job.staging_path)
            try:
                stored = await self._storage.upload(
                    staged, self._folder, object_id_for(job.id)
                )
            except Exception as exc:
                logger.warning("Durable upload failed for job %s: %s", job.id, exc)
                self._record_failure(db, job, f"Upload failed: {exc}")
                raise MigrationError(f"Upload to durable storage failed: {exc}", job.id) from exc

            try:
                self._commit_stored(db, job, stored)
            except ConcurrentModification:
                db.refresh(job)
                logger.info(
                    "Job %s was migrated concurrently; keeping the existing ref", job.id
                )
                return job.storage_ref

            self._discard_staged(db, job, staged)
            return job.storage_ref

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _commit_stored(self, db: Session, job: PrintJob, stored: StoredObject) -> None:
        self._jobs.transition(
            db,
            job,
            STATUS_IN_QUEUE,
            storage_url=stored.url,
            storage_object_id=stored.object_id,
            uploaded_to_durable_storage=True,
            last_error=None,
        )
        logger.info(
            "Migrated job %s to durable storage (%d bytes)",
            job.id,
            stored.bytes,
            extra={"object_id": stored.object_id},
        )

    def _discard_staged(self, db: Session, job: PrintJob, staged: Path) -> None:
        try:
            self._staging.delete(staged)
        except OSError:
            logger.exception("Could not delete staged file for job %s", job.id)
            return
        job.deleted_from_staging = True
        job.staging_path = None
        try:
            self._jobs.save(db, job)
        except ConcurrentModification:
            # the file is gone either way; the next writer's copy is authoritative
            logger.warning("Could not record staged delete for job %s", job.id)

    def _record_failure(self, db: Session, job: PrintJob, error: str) -> None:
        job.migration_attempts = (job.migration_attempts or 0) + 1
        job.last_error = error
        try:
            self._jobs.save(db, job)
        except PrintServiceError:
            logger.warning("Could not record migration failure for job %s", job.id)
