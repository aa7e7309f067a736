"""Job service: creates, transitions and queries PrintJob records.

Every status change goes through ``transition()``, which checks the state
machine and commits one versioned UPDATE. A writer holding a stale copy of
the row gets ``ConcurrentModification`` instead of silently overwriting.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from print_lifecycle.errors import ConcurrentModification, JobNotFound
from print_lifecycle.models.print_job import PrintJob
from print_lifecycle.pricing import PrintSpec, Quote
from print_lifecycle.states import (
    PRIORITY_NORMAL,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROCESS,
    STATUS_IN_QUEUE,
    STATUS_PAID,
    STATUS_PAYMENT_PENDING,
    STATUS_PENDING,
    TERMINAL_STATUSES,
    ensure_transition,
)

logger = logging.getLogger(__name__)

# status → timestamp column stamped when the job enters it
_TIMESTAMP_FIELDS = {
    STATUS_PAID: "payment_completed_at",
    STATUS_IN_PROCESS: "processing_started_at",
    STATUS_COMPLETED: "completed_at",
    STATUS_CANCELLED: "cancelled_at",
    STATUS_FAILED: "failed_at",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobService:
    """CRUD operations and status helpers for PrintJob records."""

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_job(
        self,
        db: Session,
        owner_id: int,
        *,
        document_name: str,
        document_size_bytes: int,
        document_page_count: int,
        spec: PrintSpec,
        quote: Quote,
        staging_path: str,
        priority: str = PRIORITY_NORMAL,
        delete_after_print: bool = True,
    ) -> PrintJob:
        """Create a new PrintJob in PENDING state and return it."""
        job = PrintJob(
            owner_id=owner_id,
            document_name=document_name,
            document_size_bytes=document_size_bytes,
            document_page_count=document_page_count,
            copies=spec.copies,
            page_selection=spec.page_selection,
            page_size=spec.page_size,
            orientation=spec.orientation,
            color_mode=spec.color_mode,
            duplex=spec.duplex,
            pages_to_print=quote.pages_to_print,
            rate_per_page=quote.rate_per_page,
            cost=quote.cost,
            staging_path=staging_path,
            priority=priority,
            delete_after_print=delete_after_print,
            status=STATUS_PENDING,
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        logger.info(
            "Created print job %s (%s) for user %s, cost %.2f",
            job.id,
            job.reference,
            owner_id,
            job.cost,
        )
        return job

    # ------------------------------------------------------------------
    # Versioned writes
    # ------------------------------------------------------------------

    def save(self, db: Session, job: PrintJob) -> PrintJob:
        """Commit pending changes on ``job`` as one versioned UPDATE."""
        try:
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            raise ConcurrentModification(
                "Print job was modified concurrently", job.id
            ) from exc
        db.refresh(job)
        return job

    def transition(
        self,
        db: Session,
        job: PrintJob,
        target: str,
        **fields,
    ) -> PrintJob:
        """Move ``job`` to ``target`` and apply ``fields`` in the same write.

        Raises ``InvalidTransition`` / ``JobNotCancellable`` without touching
        the row when the move is not allowed.
        """
        previous = job.status
        ensure_transition(previous, target, job.id)
        job.status = target
        stamp = _TIMESTAMP_FIELDS.get(target)
        if stamp:
            setattr(job, stamp, utcnow())
        for name, value in fields.items():
            setattr(job, name, value)
        self.save(db, job)
        logger.info(
            "Job %s: %s → %s",
            job.id,
            previous,
            target,
            extra={"from_status": previous, "to_status": target},
        )
        return job

    def mark_payment_pending(self, db: Session, job: PrintJob, order_id: str) -> PrintJob:
        return self.transition(db, job, STATUS_PAYMENT_PENDING, payment_order_id=order_id)

    def mark_in_process(self, db: Session, job: PrintJob) -> PrintJob:
        return self.transition(db, job, STATUS_IN_PROCESS, queue_position=None)

    def mark_completed(self, db: Session, job: PrintJob) -> PrintJob:
        return self.transition(db, job, STATUS_COMPLETED, last_error=None)

    def mark_requeued(self, db: Session, job: PrintJob, attempts: int, error: str) -> PrintJob:
        """Send a failed attempt back to the queue for another try."""
        return self.transition(db, job, STATUS_IN_QUEUE, attempts=attempts, last_error=error)

    def mark_failed(
        self,
        db: Session,
        job: PrintJob,
        error: str,
        *,
        attempts: int | None = None,
    ) -> PrintJob:
        """Transition job to FAILED and record the error."""
        fields: dict = {"last_error": error, "queue_position": None}
        if attempts is not None:
            fields["attempts"] = attempts
        return self.transition(db, job, STATUS_FAILED, **fields)

    def mark_cancelled(self, db: Session, job: PrintJob, note: str | None = None) -> PrintJob:
        return self.transition(
            db, job, STATUS_CANCELLED, queue_position=None, cleanup_note=note
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, db: Session, job_id: str) -> PrintJob | None:
        # reload so a long-lived session never acts on a stale copy
        return db.get(PrintJob, job_id, populate_existing=True)

    def require(self, db: Session, job_id: str, owner_id: int | None = None) -> PrintJob:
        """Fetch a job or raise ``JobNotFound``.

        When ``owner_id`` is given, a job owned by someone else is reported as
        not found.
        """
        job = self.get(db, job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise JobNotFound("Print job not found", job_id)
        return job

    def list_for_owner(
        self,
        db: Session,
        owner_id: int,
        *,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[PrintJob], int]:
        """Return a page of jobs for a user plus the total count.

        Jobs are ordered newest-first.
        """
        q = db.query(PrintJob).filter(PrintJob.owner_id == owner_id)
        total = q.count()
        offset = (page - 1) * page_size
        jobs = q.order_by(PrintJob.created_at.desc()).offset(offset).limit(page_size).all()
        return jobs, total

    def list_by_status(self, db: Session, *statuses: str) -> list[PrintJob]:
        stmt = (
            select(PrintJob)
            .where(PrintJob.status.in_(statuses))
            .order_by(PrintJob.created_at)
        )
        return list(db.scalars(stmt))

    def active_for_staging_path(self, db: Session, staging_path: str) -> PrintJob | None:
        """The non-terminal job that owns a staged file, if any."""
        stmt = select(PrintJob).where(
            PrintJob.staging_path == staging_path,
            PrintJob.status.not_in(sorted(TERMINAL_STATUSES)),
        )
        return db.scalars(stmt).first()
