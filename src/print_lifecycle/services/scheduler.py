"""Print scheduler: bounded-concurrency admission with retry and timeout.

One loop task owns the scheduler state (the processing set, the backoff
set and every status write the scheduler makes). Everything else talks to
it through an event queue:

    submit / cancel      called by the lifecycle, mutate the waiting line
    succeeded / failed   posted by execution tasks when a print attempt ends
    requeue              posted by a backoff timer when a retry is due

Admission runs whenever an event arrives, so a freed slot is refilled
immediately instead of on the next timer tick. At no point are more than
``max_concurrent`` jobs executing.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from print_lifecycle.errors import (
    InvalidTransition,
    JobNotCancellable,
    JobNotFound,
    PrintServiceError,
)
from print_lifecycle.logging_config import bind_job_id
from print_lifecycle.models.notification import (
    NOTIFY_COMPLETED,
    NOTIFY_FAILED,
    NOTIFY_PROCESSING,
)
from print_lifecycle.models.print_job import PrintJob
from print_lifecycle.services.executor import PrintExecutor, SimulatedPrintExecutor
from print_lifecycle.services.job_queue import InMemoryJobQueue, JobQueue
from print_lifecycle.services.job_service import JobService
from print_lifecycle.services.notifications import NotificationDispatcher, event_for
from print_lifecycle.states import (
    PRIORITY_NORMAL,
    STATUS_IN_PROCESS,
    STATUS_IN_QUEUE,
)

logger = logging.getLogger(__name__)

_WAKE = "wake"
_SUCCEEDED = "succeeded"
_FAILED = "failed"
_REQUEUE = "requeue"
_STOP = "stop"


@dataclass(frozen=True)
class _Event:
    kind: str
    job_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class SchedulerStatus:
    waiting: list[str]
    processing: list[str]
    delayed: list[str]
    max_concurrent: int
    running: bool


class PrintScheduler:
    """Runs queued print jobs, at most ``max_concurrent`` at a time."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: JobQueue | None = None,
        executor: PrintExecutor | None = None,
        dispatcher: NotificationDispatcher | None = None,
        *,
        job_service: JobService | None = None,
        max_concurrent: int | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
        job_timeout: float | None = None,
    ) -> None:
        from print_lifecycle.config import settings

        self._session_factory = session_factory
        # an empty queue is falsy (``__len__``), so test against None
        self._queue = queue if queue is not None else InMemoryJobQueue()
        self._executor = executor or SimulatedPrintExecutor()
        self._dispatcher = dispatcher
        self._jobs = job_service or JobService()
        self.max_concurrent = max_concurrent or settings.max_concurrent_jobs
        self.retry_attempts = retry_attempts or settings.retry_attempts
        self.retry_delay = settings.retry_delay_seconds if retry_delay is None else retry_delay
        self.job_timeout = job_timeout or settings.job_timeout_seconds

        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._processing: dict[str, asyncio.Task] = {}
        self._delayed: dict[str, asyncio.TimerHandle] = {}
        # finished executions whose status write failed and is being retried
        self._unrecorded: dict[str, asyncio.TimerHandle] = {}
        self._attempts: dict[str, int] = {}
        self._loop_task: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        # highest number of simultaneous executions seen since start
        self.peak_processing = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Start the scheduler loop on the running event loop."""
        if self.running:
            return
        recovered = self._queue.recover()
        if recovered:
            self._requeue_recovered(recovered)
        self._loop_task = asyncio.get_running_loop().create_task(self._run())
        self._post(_Event(_WAKE))
        logger.info(
            "Print scheduler started",
            extra={"max_concurrent": self.max_concurrent, "retry_attempts": self.retry_attempts},
        )

    async def stop(self) -> None:
        """Stop admitting jobs, cancel pending retries and running executions."""
        if not self.running:
            return
        self._post(_Event(_STOP))
        await self._loop_task
        for handle in [*self._delayed.values(), *self._unrecorded.values()]:
            handle.cancel()
        tasks = list(self._processing.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Print scheduler stopped")

    async def join(self) -> None:
        """Wait until nothing is waiting, processing or backing off."""
        while not self._is_idle():
            self._idle.clear()
            await self._idle.wait()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, job_id: str, priority: str = PRIORITY_NORMAL) -> bool:
        """Add an ``in_queue`` job to the waiting line.

        Returns False when the job is already waiting, processing or backing off.
        """
        if job_id in self._processing or job_id in self._delayed:
            return False
        if not self._queue.enqueue(job_id, priority):
            return False
        self._idle.clear()
        logger.info("Job %s queued (%s priority)", job_id, priority)
        self._post(_Event(_WAKE))
        return True

    def cancel(self, job_id: str) -> bool:
        """Take a job out of the waiting line or the backoff set.

        Raises ``JobNotCancellable`` if the job is currently executing.
        Returns False if the scheduler did not hold the job at all.
        """
        if job_id in self._processing:
            raise JobNotCancellable("Job is being printed and cannot be cancelled", job_id)
        handle = self._delayed.pop(job_id, None)
        if handle is not None:
            handle.cancel()
            self._queue.ack(job_id)
            self._attempts.pop(job_id, None)
            removed = True
        else:
            removed = self._queue.remove(job_id)
        if removed:
            logger.info("Job %s removed from the print queue", job_id)
            self._post(_Event(_WAKE))
        return removed

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            waiting=self._queue.waiting(),
            processing=list(self._processing),
            delayed=list(self._delayed),
            max_concurrent=self.max_concurrent,
            running=self.running,
        )

    def attempts(self, job_id: str) -> int:
        return self._attempts.get(job_id, 0)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _post(self, event: _Event) -> None:
        self._events.put_nowait(event)

    def _is_idle(self) -> bool:
        return not self._processing and not self._delayed and len(self._queue) == 0

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            if event.kind == _STOP:
                break
            try:
                self._handle(event)
                self._admit()
                self._update_positions()
            except Exception:
                # the job keeps its last committed status
                logger.exception("Scheduler failed handling %s for job %s", event.kind, event.job_id)
            if self._is_idle():
                self._idle.set()

    def _requeue_recovered(self, job_ids: list[str]) -> None:
        db = self._session_factory()
        try:
            for job_id in job_ids:
                job = self._jobs.get(db, job_id)
                if job is not None and job.status == STATUS_IN_PROCESS:
                    self._jobs.mark_requeued(
                        db, job, job.attempts, "Interrupted by scheduler restart"
                    )
        finally:
            db.close()
        logger.warning("Re-queued %d jobs left in flight by a previous run", len(job_ids))

    def _handle(self, event: _Event) -> None:
        if event.kind == _SUCCEEDED:
            self._on_succeeded(event.job_id)
        elif event.kind == _FAILED:
            self._on_failed(event.job_id, event.error or "Print failed")
        elif event.kind == _REQUEUE:
            if self._delayed.pop(event.job_id, None) is not None:
                self._queue.nack(event.job_id, requeue=True)

    def _admit(self) -> None:
        while len(self._processing) < self.max_concurrent:
            job_id = self._queue.dequeue()
            if job_id is None:
                return
            db = self._session_factory()
            try:
                job = self._jobs.get(db, job_id)
                if job is None or job.status != STATUS_IN_QUEUE:
                    logger.warning(
                        "Dropping queue entry for job %s (status %s)",
                        job_id,
                        job.status if job else "missing",
                    )
                    self._queue.ack(job_id)
                    continue
                try:
                    self._jobs.mark_in_process(db, job)
                except PrintServiceError:
                    logger.exception("Could not admit job %s", job_id)
                    self._queue.nack(job_id, requeue=True)
                    return
                db.expunge(job)
            finally:
                db.close()

            self._processing[job_id] = asyncio.get_running_loop().create_task(
                self._execute(job)
            )
            self.peak_processing = max(self.peak_processing, len(self._processing))
            self._notify(job, NOTIFY_PROCESSING)

    async def _execute(self, job: PrintJob) -> None:
        with bind_job_id(job.id):
            try:
                await asyncio.wait_for(self._executor.execute(job), timeout=self.job_timeout)
            except asyncio.TimeoutError:
                logger.warning("Job %s timed out after %.1fs", job.id, self.job_timeout)
                self._post(_Event(_FAILED, job.id, f"Timed out after {self.job_timeout:g}s"))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Print attempt for job %s failed: %s", job.id, exc)
                self._post(_Event(_FAILED, job.id, str(exc) or type(exc).__name__))
            else:
                self._post(_Event(_SUCCEEDED, job.id))

    def _on_succeeded(self, job_id: str) -> None:
        self._unrecorded.pop(job_id, None)
        db = self._session_factory()
        try:
            job = self._jobs.require(db, job_id)
            self._jobs.mark_completed(db, job)
        except (InvalidTransition, JobNotFound) as exc:
            self._abandon(job_id, exc)
        except Exception:
            self._retry_outcome(_Event(_SUCCEEDED, job_id))
        else:
            self._processing.pop(job_id, None)
            self._queue.ack(job_id)
            attempts = self._attempts.pop(job_id, 0)
            logger.info("Job %s completed", job_id, extra={"attempts": attempts + 1})
            self._notify(job, NOTIFY_COMPLETED)
        finally:
            db.close()

    def _on_failed(self, job_id: str, error: str) -> None:
        self._unrecorded.pop(job_id, None)
        attempts = self._attempts.get(job_id, 0) + 1
        retry = attempts < self.retry_attempts
        db = self._session_factory()
        try:
            job = self._jobs.require(db, job_id)
            if retry:
                self._jobs.mark_requeued(db, job, attempts, error)
            else:
                self._jobs.mark_failed(db, job, error, attempts=attempts)
        except (InvalidTransition, JobNotFound) as exc:
            self._abandon(job_id, exc)
        except Exception:
            self._retry_outcome(_Event(_FAILED, job_id, error))
        else:
            self._processing.pop(job_id, None)
            if retry:
                # the queue entry stays in flight until the backoff timer fires
                self._attempts[job_id] = attempts
                self._delayed[job_id] = asyncio.get_running_loop().call_later(
                    self.retry_delay, self._post, _Event(_REQUEUE, job_id)
                )
                logger.info(
                    "Retrying job %s in %gs (attempt %d of %d)",
                    job_id,
                    self.retry_delay,
                    attempts,
                    self.retry_attempts,
                )
            else:
                self._attempts.pop(job_id, None)
                self._queue.ack(job_id)
                logger.error("Job %s failed after %d attempts: %s", job_id, attempts, error)
                self._notify(job, NOTIFY_FAILED)
        finally:
            db.close()

    def _retry_outcome(self, event: _Event) -> None:
        """Keep the job's slot and queue entry and record the outcome later."""
        logger.exception(
            "Could not record %s for job %s, retrying in %gs",
            event.kind,
            event.job_id,
            self.retry_delay,
        )
        self._unrecorded[event.job_id] = asyncio.get_running_loop().call_later(
            self.retry_delay, self._post, event
        )

    def _abandon(self, job_id: str, exc: PrintServiceError) -> None:
        logger.warning("Job %s was changed outside the scheduler: %s", job_id, exc)
        self._processing.pop(job_id, None)
        self._attempts.pop(job_id, None)
        self._queue.ack(job_id)

    def _update_positions(self) -> None:
        positions = self._queue.positions()
        if not positions:
            return
        db = self._session_factory()
        try:
            for job_id, position in positions.items():
                db.execute(
                    update(PrintJob)
                    .where(PrintJob.id == job_id, PrintJob.status == STATUS_IN_QUEUE)
                    .values(queue_position=position)
                    .execution_options(synchronize_session=False)
                )
            db.commit()
        finally:
            db.close()

    def _notify(self, job: PrintJob, type_: str) -> None:
        if self._dispatcher is None:
            return
        self._dispatcher.dispatch(event_for(job, type_))
