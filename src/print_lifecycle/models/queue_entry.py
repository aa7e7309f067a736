"""Database-backed queue rows used by ``SqlJobQueue``.

A row is ``waiting`` until a scheduler dequeues it, then ``in_flight`` until
it is acked (row deleted) or nacked (back to ``waiting`` at the tail).
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from print_lifecycle.models import Base

ENTRY_WAITING = "waiting"
ENTRY_IN_FLIGHT = "in_flight"

# Lower rank is admitted first; FIFO by sequence within a rank
RANK_RECOVERED = -1
RANK_HIGH = 0
RANK_NORMAL = 1


class QueueEntry(Base):
    __tablename__ = "queue_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    rank: Mapped[int] = mapped_column(Integer, default=RANK_NORMAL)
    sequence: Mapped[int] = mapped_column(Integer, index=True)
    state: Mapped[str] = mapped_column(String(20), default=ENTRY_WAITING, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
