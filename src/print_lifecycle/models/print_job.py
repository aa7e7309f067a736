"""PrintJob model: one user's request to print one document.

The status vocabulary and the allowed transitions live in
``print_lifecycle.states``. Writes go through ``JobService`` so every status
change is a single versioned UPDATE.
"""

import random
import time
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from print_lifecycle.models import Base
from print_lifecycle.states import PAYMENT_UNPAID, PRIORITY_NORMAL, STATUS_PENDING


def new_job_id() -> str:
    return uuid.uuid4().hex


def new_reference() -> str:
    """Human-facing reference, e.g. ``PRT-1718000000000-482``."""
    return f"PRT-{int(time.time() * 1000)}-{random.randint(0, 999):03d}"


class PrintJob(Base):
    __tablename__ = "print_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_job_id)
    reference: Mapped[str] = mapped_column(String(40), default=new_reference, index=True)

    # --- Ownership ---
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    # --- Document ---
    document_name: Mapped[str] = mapped_column(String(255))
    document_size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    document_page_count: Mapped[int] = mapped_column(Integer, default=1)

    # --- Print settings ---
    copies: Mapped[int] = mapped_column(Integer, default=1)
    page_selection: Mapped[str] = mapped_column(String(255), default="all")
    page_size: Mapped[str] = mapped_column(String(16), default="A4")
    orientation: Mapped[str] = mapped_column(String(16), default="portrait")
    color_mode: Mapped[str] = mapped_column(String(16), default="black")
    duplex: Mapped[bool] = mapped_column(Boolean, default=False)
    priority: Mapped[str] = mapped_column(String(10), default=PRIORITY_NORMAL)
    delete_after_print: Mapped[bool] = mapped_column(Boolean, default=True)

    # --- File location ---
    # Local staged copy; cleared once the durable copy exists and the
    # staged file has been deleted.
    staging_path: Mapped[str | None] = mapped_column(String(1024), default=None)
    storage_url: Mapped[str | None] = mapped_column(String(1024), default=None)
    storage_object_id: Mapped[str | None] = mapped_column(String(255), default=None)
    uploaded_to_durable_storage: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_from_staging: Mapped[bool] = mapped_column(Boolean, default=False)
    # Durable copy removed after printing; storage_url is kept for audit
    durable_deleted: Mapped[bool] = mapped_column(Boolean, default=False)

    # --- Cost ---
    pages_to_print: Mapped[int] = mapped_column(Integer, default=1)
    rate_per_page: Mapped[float] = mapped_column(Float, default=0.0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)

    # --- Status tracking ---
    status: Mapped[str] = mapped_column(String(20), default=STATUS_PENDING, index=True)
    payment_status: Mapped[str] = mapped_column(String(20), default=PAYMENT_UNPAID)
    payment_order_id: Mapped[str | None] = mapped_column(String(64), default=None)
    payment_id: Mapped[str | None] = mapped_column(String(64), default=None)
    queue_position: Mapped[int | None] = mapped_column(Integer, default=None)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    migration_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    cleanup_note: Mapped[str | None] = mapped_column(Text, default=None)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    payment_completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    # Optimistic concurrency token, bumped by every ORM flush of this row
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def storage_ref(self) -> dict | None:
        if self.storage_url is None:
            return None
        return {"url": self.storage_url, "object_id": self.storage_object_id}

    def __repr__(self) -> str:
        return f"<PrintJob {self.id} status={self.status} v{self.version}>"
