"""Print request state machine.

Status lifecycle:
    pending → payment_pending → paid → in_queue → in_process → completed
       ↘ cancelled                       ↘ cancelled   ↘ in_queue (retry)
                     ↘ failed             ↘ failed      ↘ failed

These values are the wire contract with the admin console. Do not rename
them without a compatibility shim.
"""

from print_lifecycle.errors import InvalidTransition, JobNotCancellable

STATUS_PENDING = "pending"
STATUS_PAYMENT_PENDING = "payment_pending"
STATUS_PAID = "paid"
STATUS_IN_QUEUE = "in_queue"
STATUS_IN_PROCESS = "in_process"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"

ALL_STATUSES: list[str] = [
    STATUS_PENDING,
    STATUS_PAYMENT_PENDING,
    STATUS_PAID,
    STATUS_IN_QUEUE,
    STATUS_IN_PROCESS,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
    STATUS_FAILED,
]

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_CANCELLED, STATUS_FAILED})
CANCELLABLE_STATUSES = frozenset({STATUS_PENDING, STATUS_IN_QUEUE})

# Payment axis
PAYMENT_UNPAID = "unpaid"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

ALL_PAYMENT_STATUSES: list[str] = [
    PAYMENT_UNPAID,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
]

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"

# current status → statuses reachable from it
TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_PAYMENT_PENDING, STATUS_CANCELLED}),
    STATUS_PAYMENT_PENDING: frozenset({STATUS_PAID, STATUS_FAILED}),
    STATUS_PAID: frozenset({STATUS_IN_QUEUE}),
    STATUS_IN_QUEUE: frozenset({STATUS_IN_PROCESS, STATUS_CANCELLED, STATUS_FAILED}),
    # in_process → in_queue only as a bounded retry
    STATUS_IN_PROCESS: frozenset({STATUS_COMPLETED, STATUS_IN_QUEUE, STATUS_FAILED}),
    STATUS_COMPLETED: frozenset(),
    STATUS_CANCELLED: frozenset(),
    STATUS_FAILED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    """Return True if ``current → target`` is a legal status change."""
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str, job_id: str | None = None) -> None:
    """Raise if ``current → target`` is not allowed.

    Cancelling a job that is mid-print raises ``JobNotCancellable`` rather than
    the generic ``InvalidTransition`` so callers can tell the user why.
    """
    if can_transition(current, target):
        return
    if target == STATUS_CANCELLED and current == STATUS_IN_PROCESS:
        raise JobNotCancellable("Job is being printed and cannot be cancelled", job_id)
    raise InvalidTransition(current, target, job_id)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
