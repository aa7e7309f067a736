"""Print request lifecycle: the entry points request handlers call.

    upload()            stage the file, count its pages
    create_request()    price the job, create it ``pending``, open a payment order
    confirm_payment()   verify → ``paid`` → migrate → ``in_queue`` → scheduler
    retry_migration()   explicit re-trigger for a job stuck in ``paid``
    cancel()            ``pending`` / ``in_queue`` → ``cancelled`` + file cleanup

Notifications are dispatched in the background; nothing here waits on them.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable

from sqlalchemy.orm import Session

from print_lifecycle.errors import (
    InvalidTransition,
    MigrationError,
    PaymentProcessorError,
    PrintServiceError,
    StagedFileInUse,
)
from print_lifecycle.models.notification import (
    NOTIFY_CANCELLED,
    NOTIFY_FAILED,
    NOTIFY_IN_QUEUE,
    NOTIFY_PAYMENT_SUCCESSFUL,
    NOTIFY_REQUEST_RECEIVED,
    NOTIFY_UPLOAD_FAILED,
)
from print_lifecycle.models.print_job import PrintJob
from print_lifecycle.pricing import PrintSpec, Rates, calculate_cost
from print_lifecycle.services.durable_storage import DurableStorage, DurableStorageError
from print_lifecycle.services.job_service import JobService
from print_lifecycle.services.migration import CloudMigrationWorker
from print_lifecycle.services.notifications import NotificationDispatcher, event_for
from print_lifecycle.services.payment import OrderHandle, PaymentVerifier
from print_lifecycle.services.scheduler import PrintScheduler
from print_lifecycle.services.staging import StagingStore
from print_lifecycle.states import (
    PAYMENT_COMPLETED,
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    STATUS_CANCELLED,
    STATUS_IN_QUEUE,
    STATUS_PAID,
    ensure_transition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagedUpload:
    path: Path
    name: str
    original_name: str
    size_bytes: int
    page_count: int


class PrintLifecycle:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        staging: StagingStore,
        storage: DurableStorage,
        payments: PaymentVerifier,
        migration: CloudMigrationWorker,
        scheduler: PrintScheduler,
        dispatcher: NotificationDispatcher,
        *,
        job_service: JobService | None = None,
        rates: Rates | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._staging = staging
        self._storage = storage
        self._payments = payments
        self._migration = migration
        self._scheduler = scheduler
        self._dispatcher = dispatcher
        self._jobs = job_service or JobService()
        self._rates = rates

    @property
    def scheduler(self) -> PrintScheduler:
        return self._scheduler

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def staging(self) -> StagingStore:
        return self._staging

    @property
    def storage(self) -> DurableStorage:
        return self._storage

    @property
    def migration(self) -> CloudMigrationWorker:
        return self._migration

    # ------------------------------------------------------------------
    # Upload & request
    # ------------------------------------------------------------------

    def upload(self, owner_id: int, data: bytes | BinaryIO, original_name: str) -> StagedUpload:
        """Stage an uploaded document. No job exists until ``create_request``."""
        path = self._staging.stage(owner_id, data, original_name)
        return StagedUpload(
            path=path,
            name=path.name,
            original_name=self._staging.original_name(path),
            size_bytes=path.stat().st_size,
            page_count=self._staging.count_pages(path),
        )

    async def create_request(
        self,
        db: Session,
        owner_id: int,
        staged_name: str,
        spec: PrintSpec | dict | None = None,
        *,
        priority: str = PRIORITY_NORMAL,
        delete_after_print: bool = True,
        open_order: bool = True,
    ) -> PrintJob:
        """Create a ``pending`` job for a staged file and open a payment order.

        Validation errors (ownership, print settings, page range) raise before
        anything is written, as does ``StagedFileInUse`` when an active job
        already holds the staged file. A processor error while opening the order is
        logged and leaves the job ``pending`` so the order can be retried.
        """
        path = self._staging.resolve(owner_id, staged_name)
        existing = self._jobs.active_for_staging_path(db, str(path))
        if existing is not None:
            raise StagedFileInUse("Staged file already belongs to a print request", existing.id)
        if not isinstance(spec, PrintSpec):
            spec = PrintSpec.parse(spec)
        page_count = self._staging.count_pages(path)
        quote = calculate_cost(page_count, spec, self._rates)

        job = self._jobs.create_job(
            db,
            owner_id,
            document_name=self._staging.original_name(path),
            document_size_bytes=path.stat().st_size,
            document_page_count=page_count,
            spec=spec,
            quote=quote,
            staging_path=str(path),
            priority=PRIORITY_HIGH if priority == PRIORITY_HIGH else PRIORITY_NORMAL,
            delete_after_print=delete_after_print,
        )
        self._dispatcher.dispatch(event_for(job, NOTIFY_REQUEST_RECEIVED))

        if open_order:
            try:
                await self._payments.create_order(db, job.id)
            except PaymentProcessorError as exc:
                logger.warning("Could not open payment order for job %s: %s", job.id, exc)
        return job

    async def open_order(self, db: Session, job_id: str, owner_id: int | None = None) -> OrderHandle:
        """Open (or retry opening) the payment order for a ``pending`` job."""
        self._jobs.require(db, job_id, owner_id)
        return await self._payments.create_order(db, job_id)

    # ------------------------------------------------------------------
    # Payment → migration → queue
    # ------------------------------------------------------------------

    async def confirm_payment(
        self,
        db: Session,
        job_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
        owner_id: int | None = None,
    ) -> PrintJob:
        """Verify a payment, migrate the document and queue the job.

        ``SignatureInvalid`` propagates and leaves the job ``payment_pending``.
        A migration failure does not: the job stays ``paid`` and the owner is
        told the upload is pending.
        """
        job = self._jobs.require(db, job_id, owner_id)
        already_paid = job.payment_status == PAYMENT_COMPLETED and job.payment_id == payment_id
        self._payments.verify(db, job_id, order_id, payment_id, signature)
        if not already_paid:
            self._dispatcher.dispatch(event_for(job, NOTIFY_PAYMENT_SUCCESSFUL))

        try:
            await self._migration.migrate(db, job_id)
        except MigrationError as exc:
            logger.warning("Job %s paid but migration failed: %s", job_id, exc)
            self._dispatcher.dispatch(event_for(job, NOTIFY_UPLOAD_FAILED))
            return self._jobs.require(db, job_id)

        return self._enqueue(db, job_id)

    async def retry_migration(self, db: Session, job_id: str, owner_id: int | None = None) -> PrintJob:
        """Explicitly retry migration for a ``paid`` job. ``MigrationError`` propagates."""
        job = self._jobs.require(db, job_id, owner_id)
        if job.status != STATUS_PAID and not job.uploaded_to_durable_storage:
            raise InvalidTransition(job.status, STATUS_IN_QUEUE, job.id)
        await self._migration.migrate(db, job_id)
        return self._enqueue(db, job_id)

    def _enqueue(self, db: Session, job_id: str) -> PrintJob:
        job = self._jobs.require(db, job_id)
        if job.status == STATUS_IN_QUEUE and self._scheduler.submit(job.id, job.priority):
            self._dispatcher.dispatch(event_for(job, NOTIFY_IN_QUEUE))
        return job

    def payment_failed(self, db: Session, job_id: str, reason: str) -> PrintJob:
        """Record a processor-reported payment failure."""
        job = self._payments.mark_payment_failed(db, job_id, reason)
        self._dispatcher.dispatch(event_for(job, NOTIFY_FAILED))
        return job

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, db: Session, job_id: str, owner_id: int | None = None) -> PrintJob:
        """Cancel a ``pending`` or ``in_queue`` job and clean up its files.

        Raises ``JobNotCancellable`` once the job is being printed. File
        cleanup is best-effort; what happened is recorded in ``cleanup_note``.
        """
        job = self._jobs.require(db, job_id, owner_id)
        ensure_transition(job.status, STATUS_CANCELLED, job.id)
        if job.status == STATUS_IN_QUEUE:
            self._scheduler.cancel(job.id)

        staged = job.staging_path
        durable_id = (
            job.storage_object_id
            if job.uploaded_to_durable_storage and job.delete_after_print
            else None
        )
        self._jobs.mark_cancelled(db, job, note="cleanup pending")
        self._dispatcher.dispatch(event_for(job, NOTIFY_CANCELLED))

        notes: list[str] = []
        if staged:
            try:
                removed = self._staging.delete(staged)
                job.deleted_from_staging = True
                job.staging_path = None
                notes.append("staged file removed" if removed else "staged file already gone")
            except OSError as exc:
                logger.warning("Could not delete staged file for job %s: %s", job.id, exc)
                notes.append(f"staged delete failed: {exc}")
        if durable_id:
            try:
                await self._storage.delete(durable_id)
                job.durable_deleted = True
                notes.append("durable copy removed")
            except DurableStorageError as exc:
                logger.warning("Could not delete durable copy for job %s: %s", job.id, exc)
                notes.append(f"durable delete failed: {exc}")

        job.cleanup_note = "; ".join(notes) or "nothing to clean up"
        try:
            self._jobs.save(db, job)
        except PrintServiceError:
            logger.exception("Could not record cleanup result for job %s", job.id)
        return job

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def job_status(self, db: Session, job_id: str, owner_id: int | None = None) -> dict:
        """Caller-facing snapshot of a job."""
        job = self._jobs.require(db, job_id, owner_id)
        return {
            "id": job.id,
            "reference": job.reference,
            "status": job.status,
            "payment_status": job.payment_status,
            "queue_position": job.queue_position,
            "cost": job.cost,
            "storage_ref": job.storage_ref,
            "attempts": job.attempts,
            "last_error": job.last_error,
        }

    def list_jobs(
        self, db: Session, owner_id: int, *, page: int = 1, page_size: int = 20
    ) -> tuple[list[PrintJob], int]:
        return self._jobs.list_for_owner(db, owner_id, page=page, page_size=page_size)


def build_lifecycle(session_factory: Callable[[], Session] | None = None) -> PrintLifecycle:
    """Wire a lifecycle from configuration."""
    from print_lifecycle.config import settings
    from print_lifecycle.database import SessionLocal
    from print_lifecycle.services.durable_storage import build_durable_storage
    from print_lifecycle.services.job_queue import SqlJobQueue
    from print_lifecycle.services.notifications import build_channels
    from print_lifecycle.services.staging import get_staging

    session_factory = session_factory or SessionLocal
    staging = get_staging()
    storage = build_durable_storage()
    dispatcher = NotificationDispatcher(build_channels(session_factory), session_factory)
    scheduler = PrintScheduler(
        session_factory,
        queue=SqlJobQueue(session_factory),
        dispatcher=dispatcher,
        max_concurrent=settings.max_concurrent_jobs,
        retry_attempts=settings.retry_attempts,
        retry_delay=settings.retry_delay_seconds,
        job_timeout=settings.job_timeout_seconds,
    )
    return PrintLifecycle(
        session_factory,
        staging=staging,
        storage=storage,
        payments=PaymentVerifier(),
        migration=CloudMigrationWorker(storage, staging),
        scheduler=scheduler,
        dispatcher=dispatcher,
        rates=Rates.from_settings(),
    )
