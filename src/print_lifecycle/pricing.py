"""Print settings validation and cost calculation.

Cost is fixed at request time:
    pages_to_print × copies × rate_per_page

where ``pages_to_print`` comes from the page selection (``"all"`` or a list
like ``"1-3,5"``) resolved against the document's page count.
"""

import logging
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from print_lifecycle.errors import InvalidPageRange, InvalidPrintSpec

logger = logging.getLogger(__name__)

MAX_COPIES = 50


class PrintSpec(BaseModel):
    """User-chosen print settings."""

    copies: int = Field(default=1, ge=1, le=MAX_COPIES)
    page_selection: str = "all"
    page_size: Literal["A4", "A3", "A5", "Letter", "Legal"] = "A4"
    orientation: Literal["portrait", "landscape", "auto"] = "portrait"
    color_mode: Literal["black", "color"] = "black"
    duplex: bool = False

    @classmethod
    def parse(cls, data: dict | None) -> "PrintSpec":
        """Build a spec from raw request data, raising ``InvalidPrintSpec``."""
        try:
            return cls.model_validate(data or {})
        except PydanticValidationError as exc:
            raise InvalidPrintSpec(f"Invalid print settings: {exc.errors()[0]['msg']}") from exc


@dataclass(frozen=True)
class Rates:
    black: float = 1.0
    color: float = 5.0

    @classmethod
    def from_settings(cls) -> "Rates":
        from print_lifecycle.config import settings

        return cls(black=settings.black_rate, color=settings.color_rate)

    def for_mode(self, color_mode: str) -> float:
        return self.color if color_mode == "color" else self.black


@dataclass(frozen=True)
class Quote:
    pages_to_print: int
    rate_per_page: float
    cost: float


def count_pages_from_selection(selection: str, total_pages: int) -> int:
    """Return how many pages a selection covers.

    ``"all"`` (or an empty string) means every page. Otherwise the selection
    is a comma separated list of single pages and ``a-b`` ranges. Malformed
    items and items reaching past the last page are skipped. Raises
    ``InvalidPageRange`` when nothing printable remains.
    """
    selection = (selection or "").strip()
    if not selection or selection.lower() == "all":
        if total_pages <= 0:
            raise InvalidPageRange("Document has no pages")
        return total_pages

    total = 0
    for item in selection.split(","):
        item = item.strip()
        if not item:
            continue
        if "-" in item:
            start_s, _, end_s = item.partition("-")
            try:
                start, end = int(start_s), int(end_s)
            except ValueError:
                logger.debug("Skipping malformed page range %r", item)
                continue
            if 0 < start <= end <= total_pages:
                total += end - start + 1
        else:
            try:
                page = int(item)
            except ValueError:
                logger.debug("Skipping malformed page %r", item)
                continue
            if 0 < page <= total_pages:
                total += 1

    if total <= 0:
        raise InvalidPageRange(f"Invalid page range: {selection!r}")
    return total


def calculate_cost(page_count: int, spec: PrintSpec, rates: Rates | None = None) -> Quote:
    """Price a print request. The result is stored on the job and never recomputed."""
    rates = rates or Rates.from_settings()
    pages = count_pages_from_selection(spec.page_selection, page_count)
    rate = rates.for_mode(spec.color_mode)
    return Quote(pages_to_print=pages, rate_per_page=rate, cost=pages * spec.copies * rate)
