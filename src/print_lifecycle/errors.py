"""Print service error hierarchy.

Validation and state errors are raised synchronously to the caller and leave
the job untouched. Side-effect failures (notifications, cleanup) never surface
as these exceptions; they are logged where they happen.
"""


class PrintServiceError(Exception):
    """Base exception for print lifecycle operations."""

    def __init__(self, message: str, job_id: str | None = None):
        super().__init__(message)
        self.job_id = job_id

    def __str__(self) -> str:
        base = super().__str__()
        if self.job_id:
            return f"{base} job_id={self.job_id}"
        return base


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(PrintServiceError):
    """Rejected input. No job is created and nothing is written."""


class UnsupportedFormat(ValidationError):
    """File extension is not in the configured allow-list."""


class FileTooLarge(ValidationError):
    """Upload exceeds the configured size ceiling."""

    def __init__(self, message: str, limit_bytes: int, job_id: str | None = None):
        super().__init__(message, job_id)
        self.limit_bytes = limit_bytes


class InvalidPageRange(ValidationError):
    """Page selection resolves to zero printable pages."""


class InvalidPrintSpec(ValidationError):
    """Print settings failed validation."""


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


class PaymentError(PrintServiceError):
    """Base for payment verification failures. Job stays payment_pending."""


class SignatureInvalid(PaymentError):
    """Payment signature did not match. Hard rejection, never retried."""


class PaymentProcessorError(PaymentError):
    """The payment processor could not be reached or rejected the call."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        job_id: str | None = None,
    ):
        super().__init__(message, job_id)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


class MigrationError(PrintServiceError):
    """Durable storage upload failed. Non-fatal: job stays paid and retryable."""


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class JobNotFound(PrintServiceError):
    """No print job with the given id (or not owned by the caller)."""


class InvalidTransition(PrintServiceError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current: str, target: str, job_id: str | None = None):
        super().__init__(f"Cannot move from {current!r} to {target!r}", job_id)
        self.current = current
        self.target = target


class JobNotCancellable(PrintServiceError):
    """Job is already being printed and can no longer be cancelled."""


class ConcurrentModification(PrintServiceError):
    """Another writer updated the job first (optimistic version check failed)."""


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------


class StagedFileNotFound(PrintServiceError):
    """No staged file matches the requested name."""


class StagingAccessDenied(PrintServiceError):
    """Staged file exists but belongs to a different owner."""


class StagedFileInUse(PrintServiceError):
    """An active print job already references the staged file."""
