"""Structured JSON logging configuration for the print lifecycle service.

Call ``configure_logging()`` once at process startup. After that, every
``logging.getLogger(__name__)`` call produces structured JSON lines on
stdout, compatible with log aggregators (Datadog, CloudWatch, Loki, etc.).

``bind_job_id()`` binds a print job id to ``contextvars`` so all log records
emitted while that job is being processed automatically include ``job_id``.
Each asyncio task gets its own copy of the context, so concurrent jobs never
see each other's id.
"""

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

# ── Context variable ──────────────────────────────────────────────────────────
_job_id_var: ContextVar[str] = ContextVar("job_id", default="")


def get_job_id() -> str:
    """Return the job ID bound to the current context (empty string if none)."""
    return _job_id_var.get()


@contextmanager
def bind_job_id(job_id: str) -> Iterator[None]:
    """Bind ``job_id`` for every log record emitted inside the block."""
    token = _job_id_var.set(job_id)
    try:
        yield
    finally:
        _job_id_var.reset(token)


# ── JSON log formatter ────────────────────────────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects.

    Each record gets the standard fields plus ``job_id`` (when bound) and
    any extra key-value pairs passed as ``extra=`` to the logger call.
    """

    # Fields that are already represented at the top level.
    _SKIP_ATTRS = frozenset(
        {
            "args",
            "created",
            "exc_info",
            "exc_text",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "message",
            "module",
            "msecs",
            "msg",
            "name",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "stack_info",
            "taskName",
            "thread",
            "threadName",
        }
    )

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        payload: dict = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        job_id = get_job_id()
        if job_id:
            payload["job_id"] = job_id

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in self._SKIP_ATTRS and not key.startswith("_"):
                payload[key] = value

        return json.dumps(payload, default=str)


# ── Public configuration entry-point ─────────────────────────────────────────


def configure_logging(level: str = "INFO") -> None:
    """Replace the root logger's handlers with a single JSON-to-stdout handler.

    Args:
        level: Logging level string, e.g. ``"INFO"``, ``"DEBUG"``, ``"WARNING"``.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # Silence noisy third-party loggers that don't add value in production
    for noisy in ("httpx", "httpcore", "botocore", "boto3", "aiosmtplib"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Structured JSON logging initialised",
        extra={"log_level": level.upper()},
    )
