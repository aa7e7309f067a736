"""Payment verifier: creates processor orders and confirms signed payments.

Order creation (Razorpay-compatible REST API):
    POST {payment_api_base}/orders  {amount, currency, receipt}  → {id, ...}

Verification:
    signature == hex(HMAC-SHA256(key_secret, f"{order_id}|{payment_id}"))

A confirmed payment flips ``payment_status`` and ``status`` together in one
versioned commit. Migration to durable storage is a separate, later commit,
so a failed upload never undoes a confirmed payment.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.orm import Session

from print_lifecycle.errors import PaymentProcessorError, SignatureInvalid
from print_lifecycle.models.payment import Payment
from print_lifecycle.models.print_job import PrintJob
from print_lifecycle.services.job_service import JobService
from print_lifecycle.states import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    STATUS_FAILED,
    STATUS_PAID,
    STATUS_PAYMENT_PENDING,
    ensure_transition,
)

logger = logging.getLogger(__name__)


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    """Hex HMAC-SHA256 of ``order_id|payment_id`` keyed with ``secret``."""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    expected = compute_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))


@dataclass(frozen=True)
class OrderHandle:
    order_id: str
    amount: int
    currency: str
    receipt: str


class PaymentGateway:
    """Thin async client for the payment processor's order API."""

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        base_url: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 15.0,
    ) -> None:
        from print_lifecycle.config import settings

        self._key_id = key_id if key_id is not None else settings.payment_key_id
        self._key_secret = key_secret if key_secret is not None else settings.payment_key_secret
        self._base_url = (base_url or settings.payment_api_base).rstrip("/")
        self._transport = transport
        self._timeout = timeout

    @property
    def key_secret(self) -> str:
        return self._key_secret

    async def create_order(self, amount: int, currency: str, receipt: str) -> OrderHandle:
        """Create a payable order. ``amount`` is in minor units (paise, cents)."""
        url = f"{self._base_url}/orders"
        payload = {"amount": amount, "currency": currency, "receipt": receipt}
        logger.debug("Payment API POST %s receipt=%s", url, receipt)
        try:
            async with httpx.AsyncClient(
                auth=(self._key_id, self._key_secret),
                transport=self._transport,
                timeout=self._timeout,
            ) as client:
                resp = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise PaymentProcessorError(f"Payment processor unreachable: {exc}") from exc

        if not resp.is_success:
            logger.error(
                "Payment API error %s for %s: %s",
                resp.status_code,
                receipt,
                resp.text[:500],
            )
            raise PaymentProcessorError(
                "Payment processor rejected the order", status_code=resp.status_code
            )

        data = resp.json()
        order_id = data.get("id")
        if not order_id:
            raise PaymentProcessorError("Payment processor returned no order id")
        return OrderHandle(
            order_id=order_id,
            amount=int(data.get("amount", amount)),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", receipt),
        )


class PaymentVerifier:
    """Creates orders for pending jobs and confirms signed payments."""

    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        job_service: JobService | None = None,
        currency: str | None = None,
    ) -> None:
        from print_lifecycle.config import settings

        self._gateway = gateway or PaymentGateway()
        self._jobs = job_service or JobService()
        self._currency = currency or settings.currency

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(self, db: Session, job_id: str) -> OrderHandle:
        """Ask the processor for an order sized to ``job.cost``.

        On success the order id is stored and the job moves to
        ``payment_pending``. On a processor error the job stays ``pending``.
        """
        job = self._jobs.require(db, job_id)
        ensure_transition(job.status, STATUS_PAYMENT_PENDING, job.id)

        handle = await self._gateway.create_order(
            amount=round(job.cost * 100),
            currency=self._currency,
            receipt=f"print_{job.id}",
        )
        self._jobs.mark_payment_pending(db, job, handle.order_id)
        logger.info("Created payment order %s for job %s", handle.order_id, job.id)
        return handle

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(
        self,
        db: Session,
        job_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> bool:
        """Confirm a payment assertion and mark the job paid.

        Raises ``SignatureInvalid`` on any mismatch; the job is left in
        ``payment_pending``. Re-verifying an already confirmed payment with
        the same ids returns True without writing anything.
        """
        job = self._jobs.require(db, job_id)

        if not signature_matches(self._gateway.key_secret, order_id, payment_id, signature):
            logger.warning(
                "Payment signature mismatch for job %s (order %s)",
                job.id,
                order_id,
                extra={"order_id": order_id, "payment_id": payment_id},
            )
            raise SignatureInvalid("Payment signature is invalid", job.id)

        if job.payment_order_id and job.payment_order_id != order_id:
            logger.warning(
                "Order id %s does not match job %s order %s",
                order_id,
                job.id,
                job.payment_order_id,
            )
            raise SignatureInvalid("Payment does not belong to this order", job.id)

        if job.payment_status == PAYMENT_COMPLETED:
            if job.payment_id == payment_id:
                logger.info("Payment %s already confirmed for job %s", payment_id, job.id)
                return True
            raise SignatureInvalid("Job is already paid with a different payment", job.id)

        ensure_transition(job.status, STATUS_PAID, job.id)
        db.add(
            Payment(
                job_id=job.id,
                owner_id=job.owner_id,
                amount=job.cost,
                currency=self._currency,
                order_id=order_id,
                payment_id=payment_id,
                signature=signature,
                status=PAYMENT_COMPLETED,
            )
        )
        self._jobs.transition(
            db,
            job,
            STATUS_PAID,
            payment_status=PAYMENT_COMPLETED,
            payment_order_id=order_id,
            payment_id=payment_id,
        )
        logger.info(
            "Payment %s verified for job %s",
            payment_id,
            job.id,
            extra={"order_id": order_id, "amount": job.cost},
        )
        return True

    def mark_payment_failed(self, db: Session, job_id: str, reason: str) -> PrintJob:
        """Record a processor-reported payment failure (terminal)."""
        job = self._jobs.require(db, job_id)
        return self._jobs.transition(
            db,
            job,
            STATUS_FAILED,
            payment_status=PAYMENT_FAILED,
            last_error=reason,
        )
