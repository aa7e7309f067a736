"""Waiting-line abstraction for the print scheduler.

Entries move ``waiting → in_flight`` on ``dequeue()`` and leave on
``ack()``; ``nack(requeue=True)`` puts an in-flight entry back at the tail.
``high`` priority entries go ahead of every ``normal`` entry but stay FIFO
among themselves.

``InMemoryJobQueue`` is process-local. ``SqlJobQueue`` keeps the same line
in the ``queue_entries`` table so a restarted scheduler can pick up where
the previous one stopped (see ``recover()``).
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from print_lifecycle.models.queue_entry import (
    ENTRY_IN_FLIGHT,
    ENTRY_WAITING,
    RANK_HIGH,
    RANK_NORMAL,
    RANK_RECOVERED,
    QueueEntry,
)
from print_lifecycle.states import PRIORITY_HIGH

logger = logging.getLogger(__name__)


def _rank(priority: str) -> int:
    return RANK_HIGH if priority == PRIORITY_HIGH else RANK_NORMAL


class JobQueue(ABC):
    """Ordered waiting line of job ids."""

    @abstractmethod
    def enqueue(self, job_id: str, priority: str = "normal") -> bool:
        """Add a job. Returns False if it is already queued or in flight."""

    @abstractmethod
    def dequeue(self) -> str | None:
        """Pop the head of the line and mark it in flight."""

    @abstractmethod
    def ack(self, job_id: str) -> None:
        """Forget an in-flight job."""

    @abstractmethod
    def nack(self, job_id: str, requeue: bool = True) -> None:
        """Return an in-flight job to the tail of the line (or drop it)."""

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        """Drop a waiting job. Returns False if it was not waiting."""

    @abstractmethod
    def waiting(self) -> list[str]:
        """Waiting job ids in admission order."""

    @abstractmethod
    def in_flight(self) -> list[str]: ...

    def recover(self) -> list[str]:
        """Return in-flight entries left by a previous run to the head of the line."""
        return []

    def positions(self) -> dict[str, int]:
        """1-based position of every waiting job."""
        return {job_id: i + 1 for i, job_id in enumerate(self.waiting())}

    def __len__(self) -> int:
        return len(self.waiting())

    def __contains__(self, job_id: str) -> bool:
        return job_id in self.waiting() or job_id in self.in_flight()


class InMemoryJobQueue(JobQueue):
    def __init__(self) -> None:
        # (job_id, rank) pairs in admission order
        self._waiting: deque[tuple[str, int]] = deque()
        self._in_flight: set[str] = set()

    def enqueue(self, job_id: str, priority: str = "normal") -> bool:
        if job_id in self._in_flight or any(j == job_id for j, _ in self._waiting):
            return False
        rank = _rank(priority)
        # insert after the last entry of the same or better rank
        index = len(self._waiting)
        for i, (_, other) in enumerate(self._waiting):
            if other > rank:
                index = i
                break
        self._waiting.insert(index, (job_id, rank))
        return True

    def dequeue(self) -> str | None:
        if not self._waiting:
            return None
        job_id, _ = self._waiting.popleft()
        self._in_flight.add(job_id)
        return job_id

    def ack(self, job_id: str) -> None:
        self._in_flight.discard(job_id)

    def nack(self, job_id: str, requeue: bool = True) -> None:
        self._in_flight.discard(job_id)
        if requeue:
            self._waiting.append((job_id, RANK_NORMAL))

    def remove(self, job_id: str) -> bool:
        for entry in self._waiting:
            if entry[0] == job_id:
                self._waiting.remove(entry)
                return True
        return False

    def recover(self) -> list[str]:
        recovered = sorted(self._in_flight)
        for job_id in reversed(recovered):
            self._waiting.appendleft((job_id, RANK_RECOVERED))
        self._in_flight.clear()
        return recovered

    def waiting(self) -> list[str]:
        return [job_id for job_id, _ in self._waiting]

    def in_flight(self) -> list[str]:
        return sorted(self._in_flight)

    def __len__(self) -> int:
        return len(self._waiting)


class SqlJobQueue(JobQueue):
    """Queue persisted in ``queue_entries``.

    Each call opens and closes its own session, so the queue can be shared
    by the scheduler loop and request handlers.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _next_sequence(self, db: Session) -> int:
        current = db.scalar(select(func.max(QueueEntry.sequence)))
        return (current or 0) + 1

    def _ordered_waiting(self):
        return (
            select(QueueEntry)
            .where(QueueEntry.state == ENTRY_WAITING)
            .order_by(QueueEntry.rank, QueueEntry.sequence)
        )

    def enqueue(self, job_id: str, priority: str = "normal") -> bool:
        db = self._session_factory()
        try:
            if db.scalar(select(QueueEntry).where(QueueEntry.job_id == job_id)):
                return False
            db.add(
                QueueEntry(
                    job_id=job_id,
                    rank=_rank(priority),
                    sequence=self._next_sequence(db),
                    state=ENTRY_WAITING,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True
        finally:
            db.close()

    def dequeue(self) -> str | None:
        db = self._session_factory()
        try:
            entry = db.scalars(self._ordered_waiting().limit(1)).first()
            if entry is None:
                return None
            entry.state = ENTRY_IN_FLIGHT
            db.commit()
            return entry.job_id
        finally:
            db.close()

    def ack(self, job_id: str) -> None:
        db = self._session_factory()
        try:
            db.execute(
                delete(QueueEntry).where(
                    QueueEntry.job_id == job_id, QueueEntry.state == ENTRY_IN_FLIGHT
                )
            )
            db.commit()
        finally:
            db.close()

    def nack(self, job_id: str, requeue: bool = True) -> None:
        db = self._session_factory()
        try:
            entry = db.scalar(
                select(QueueEntry).where(
                    QueueEntry.job_id == job_id, QueueEntry.state == ENTRY_IN_FLIGHT
                )
            )
            if entry is None:
                return
            if requeue:
                entry.state = ENTRY_WAITING
                entry.rank = RANK_NORMAL
                entry.sequence = self._next_sequence(db)
            else:
                db.delete(entry)
            db.commit()
        finally:
            db.close()

    def remove(self, job_id: str) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                delete(QueueEntry).where(
                    QueueEntry.job_id == job_id, QueueEntry.state == ENTRY_WAITING
                )
            )
            db.commit()
            return result.rowcount > 0
        finally:
            db.close()

    def waiting(self) -> list[str]:
        db = self._session_factory()
        try:
            return [entry.job_id for entry in db.scalars(self._ordered_waiting())]
        finally:
            db.close()

    def in_flight(self) -> list[str]:
        db = self._session_factory()
        try:
            stmt = select(QueueEntry.job_id).where(QueueEntry.state == ENTRY_IN_FLIGHT)
            return list(db.scalars(stmt))
        finally:
            db.close()

    def recover(self) -> list[str]:
        db = self._session_factory()
        try:
            entries = list(
                db.scalars(
                    select(QueueEntry)
                    .where(QueueEntry.state == ENTRY_IN_FLIGHT)
                    .order_by(QueueEntry.sequence)
                )
            )
            for entry in entries:
                entry.state = ENTRY_WAITING
                entry.rank = RANK_RECOVERED
            db.commit()
            recovered = [entry.job_id for entry in entries]
        finally:
            db.close()
        if recovered:
            logger.warning("Recovered %d in-flight queue entries", len(recovered))
        return recovered
