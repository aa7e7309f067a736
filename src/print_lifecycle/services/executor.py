"""Print executors: the step that actually produces a job on a printer.

The scheduler only needs ``await executor.execute(job)`` to return on success
and raise on failure. Physical printer drivers plug in here; the simulated
executor stands in until one is wired up.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod

from print_lifecycle.models.print_job import PrintJob

logger = logging.getLogger(__name__)


class PrintFailed(Exception):
    """The printer reported a failure for this attempt."""


class PrintExecutor(ABC):
    """Abstract base class for print executors."""

    @abstractmethod
    async def execute(self, job: PrintJob) -> None:
        """Produce one print job. Raise to signal a failed attempt."""


class SimulatedPrintExecutor(PrintExecutor):
    """Sleeps for a random duration and optionally fails at a fixed rate."""

    def __init__(
        self,
        min_seconds: float = 2.0,
        max_seconds: float = 5.0,
        failure_rate: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        self._min = min_seconds
        self._max = max_seconds
        self._failure_rate = failure_rate
        self._rng = rng or random.Random()

    async def execute(self, job: PrintJob) -> None:
        duration = self._rng.uniform(self._min, self._max)
        logger.info(
            "Printing job %s: %d pages x %d copies",
            job.id,
            job.pages_to_print,
            job.copies,
            extra={"duration_s": round(duration, 2)},
        )
        await asyncio.sleep(duration)
        if self._rng.random() < self._failure_rate:
            raise PrintFailed("Simulated printer failure")
