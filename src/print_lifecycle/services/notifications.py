"""Notification dispatcher: best-effort fan-out of job events to the owner.

Channels are decided once, at construction, and handed in as capabilities:

    Available(channel)   the channel is configured and will be used
    Unavailable(reason)  the channel is switched off; logged once, never probed

``dispatch()`` schedules delivery on the running loop and returns at once, so
job state changes never wait on SMTP or SMS. A failing channel is logged and
the remaining channels still run.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Union

import httpx
from sqlalchemy.orm import Session

from print_lifecycle.models.notification import (
    NOTIFY_CANCELLED,
    NOTIFY_COMPLETED,
    NOTIFY_FAILED,
    NOTIFY_IN_QUEUE,
    NOTIFY_PAYMENT_SUCCESSFUL,
    NOTIFY_PROCESSING,
    NOTIFY_REQUEST_RECEIVED,
    NOTIFY_UPLOAD_FAILED,
    Notification,
)
from print_lifecycle.models.print_job import PrintJob
from print_lifecycle.models.user import User
from print_lifecycle.services.email_service import EmailService, get_email_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    owner_id: int
    job_id: str | None
    type: str
    title: str
    message: str
    reference: str = ""


# type → (title, message template); templates see the job's document name
_CATALOGUE: dict[str, tuple[str, str]] = {
    NOTIFY_REQUEST_RECEIVED: (
        "Print Request Created",
        'Your print request for "{name}" has been created. Please complete the payment.',
    ),
    NOTIFY_PAYMENT_SUCCESSFUL: (
        "Payment Successful",
        'Payment completed for "{name}". Your request is now in queue.',
    ),
    NOTIFY_UPLOAD_FAILED: (
        "Document Upload Pending",
        "Payment successful but document upload to cloud storage failed. "
        "Your request is still valid and will be processed.",
    ),
    NOTIFY_IN_QUEUE: (
        "Print Request In Queue",
        'Your print request for "{name}" has been added to the printing queue.',
    ),
    NOTIFY_PROCESSING: ("Print In Process", "Your print job is now being processed"),
    NOTIFY_COMPLETED: (
        "Print Completed",
        "Your print job has been completed and is ready for pickup",
    ),
    NOTIFY_FAILED: ("Print Failed", "Your print job has failed. Please contact support"),
    NOTIFY_CANCELLED: (
        "Print Request Cancelled",
        'Your print request for "{name}" has been cancelled.',
    ),
}


def event_for(job: PrintJob, type_: str) -> NotificationEvent:
    """Build the standard event of ``type_`` for ``job``."""
    title, template = _CATALOGUE[type_]
    return NotificationEvent(
        owner_id=job.owner_id,
        job_id=job.id,
        type=type_,
        title=title,
        message=template.format(name=job.document_name),
        reference=job.reference or "",
    )


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class NotificationChannel(ABC):
    name: str = "channel"

    @abstractmethod
    async def send(self, event: NotificationEvent, recipient: User | None) -> None:
        """Deliver one event. Raise on failure; the dispatcher logs it."""


class InAppChannel(NotificationChannel):
    """Stores the event as a ``Notification`` row for the user's inbox."""

    name = "in_app"

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    async def send(self, event: NotificationEvent, recipient: User | None) -> None:
        db = self._session_factory()
        try:
            db.add(
                Notification(
                    owner_id=event.owner_id,
                    job_id=event.job_id,
                    type=event.type,
                    title=event.title,
                    message=event.message,
                )
            )
            db.commit()
        finally:
            db.close()


class EmailChannel(NotificationChannel):
    """Emails the owner; failed jobs are also sent to the staff address."""

    name = "email"

    def __init__(self, email_service: EmailService, staff_email: str = "") -> None:
        self._email = email_service
        self._staff_email = staff_email

    async def send(self, event: NotificationEvent, recipient: User | None) -> None:
        if recipient is not None and recipient.email:
            await self._email.send_job_update(
                to_email=recipient.email,
                user_name=recipient.name,
                title=event.title,
                message=event.message,
                reference=event.reference,
            )
        else:
            logger.debug("No email for user %s, skipping owner email", event.owner_id)

        if event.type == NOTIFY_FAILED and self._staff_email:
            await self._email.send_staff_alert(
                to_email=self._staff_email,
                title=event.title,
                message=f"{event.message}\n\nOwner: {event.owner_id}",
                reference=event.reference,
            )


def format_phone(number: str, country_code: str = "+91") -> str:
    """Normalise to E.164, assuming ``country_code`` for bare national numbers."""
    number = number.strip().replace(" ", "").replace("-", "")
    if number.startswith("+"):
        return number
    digits = country_code.lstrip("+")
    if number.startswith(digits) and len(number) > 10:
        number = number[len(digits):]
    return f"{country_code}{number}"


class SmsChannel(NotificationChannel):
    """Sends a short text through a Twilio-compatible Messages API."""

    name = "sms"
    API_BASE = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._sid = account_sid
        self._token = auth_token
        self._from = from_number
        self._transport = transport

    async def send(self, event: NotificationEvent, recipient: User | None) -> None:
        if recipient is None or not recipient.phone:
            logger.debug("No phone for user %s, skipping SMS", event.owner_id)
            return
        url = f"{self.API_BASE}/Accounts/{self._sid}/Messages.json"
        body = f"{event.title}\n\n{event.message}"
        if event.reference:
            body += f"\n\nRef: {event.reference}"
        async with httpx.AsyncClient(
            auth=(self._sid, self._token), transport=self._transport, timeout=10.0
        ) as client:
            resp = await client.post(
                url,
                data={"To": format_phone(recipient.phone), "From": self._from, "Body": body},
            )
        resp.raise_for_status()
        logger.info("SMS sent for job %s", event.job_id, extra={"sid": resp.json().get("sid")})


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Available:
    channel: NotificationChannel


@dataclass(frozen=True)
class Unavailable:
    name: str
    reason: str


Capability = Union[Available, Unavailable]


def build_channels(session_factory: Callable[[], Session]) -> list[Capability]:
    """Resolve channel capabilities from configuration."""
    from print_lifecycle.config import settings

    channels: list[Capability] = [Available(InAppChannel(session_factory))]

    email = get_email_service()
    if email.configured:
        channels.append(Available(EmailChannel(email, settings.staff_email)))
    else:
        channels.append(Unavailable("email", "SMTP credentials not configured"))

    if settings.sms_account_sid and settings.sms_auth_token and settings.sms_from_number:
        channels.append(
            Available(
                SmsChannel(
                    settings.sms_account_sid,
                    settings.sms_auth_token,
                    settings.sms_from_number,
                )
            )
        )
    else:
        channels.append(Unavailable("sms", "SMS credentials not configured"))
    return channels


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    def __init__(
        self,
        channels: list[Capability],
        session_factory: Callable[[], Session] | None = None,
    ) -> None:
        self._channels: list[NotificationChannel] = []
        for capability in channels:
            if isinstance(capability, Available):
                self._channels.append(capability.channel)
            else:
                logger.info(
                    "Notification channel %s unavailable: %s",
                    capability.name,
                    capability.reason,
                )
        self._session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    @property
    def channel_names(self) -> list[str]:
        return [channel.name for channel in self._channels]

    def dispatch(self, event: NotificationEvent) -> asyncio.Task | None:
        """Schedule delivery without waiting for it."""
        if not self._channels:
            return None
        task = asyncio.get_running_loop().create_task(self.notify(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def notify(self, event: NotificationEvent) -> dict[str, bool]:
        """Deliver to every available channel. Never raises.

        Returns a per-channel success map.
        """
        recipient = self._load_recipient(event.owner_id)
        results: dict[str, bool] = {}
        for channel in self._channels:
            try:
                await channel.send(event, recipient)
                results[channel.name] = True
            except Exception:
                logger.exception(
                    "Notification via %s failed for job %s", channel.name, event.job_id
                )
                results[channel.name] = False
        return results

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _load_recipient(self, owner_id: int) -> User | None:
        if self._session_factory is None:
            return None
        db = self._session_factory()
        try:
            return db.get(User, owner_id)
        except Exception:
            logger.exception("Could not load user %s for notification", owner_id)
            return None
        finally:
            db.close()
