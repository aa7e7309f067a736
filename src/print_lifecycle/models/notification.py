from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from print_lifecycle.models import Base

# Notification types shown in the user's inbox
NOTIFY_REQUEST_RECEIVED = "request_received"
NOTIFY_PAYMENT_SUCCESSFUL = "payment_successful"
NOTIFY_UPLOAD_FAILED = "upload_failed"
NOTIFY_IN_QUEUE = "in_queue"
NOTIFY_PROCESSING = "processing"
NOTIFY_COMPLETED = "completed"
NOTIFY_FAILED = "failed"
NOTIFY_CANCELLED = "cancelled"


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    job_id: Mapped[str | None] = mapped_column(String(64), default=None, index=True)
    type: Mapped[str] = mapped_column(String(40))
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
