"""Tests for print settings validation and cost calculation."""

import pytest

from print_lifecycle.errors import InvalidPageRange, InvalidPrintSpec
from print_lifecycle.pricing import (
    PrintSpec,
    Rates,
    calculate_cost,
    count_pages_from_selection,
)

RATES = Rates(black=1.0, color=5.0)


# ---------------------------------------------------------------------------
# Page selection
# ---------------------------------------------------------------------------


def test_all_selects_every_page():
    assert count_pages_from_selection("all", 12) == 12
    assert count_pages_from_selection("", 3) == 3


def test_ranges_and_single_pages_are_summed():
    """"1-3,5" covers four pages."""
    assert count_pages_from_selection("1-3,5", 10) == 4
    assert count_pages_from_selection(" 2 - 4 , 7,9 ", 10) == 5


def test_malformed_items_are_skipped():
    """Items that are not numbers or valid ranges count for nothing."""
    assert count_pages_from_selection("1-2,abc,4-x,6", 10) == 3


def test_reversed_or_zero_ranges_are_ignored():
    assert count_pages_from_selection("5-3,0,2", 10) == 1


def test_pages_past_the_end_are_not_counted():
    """On a 10-page document only in-range items count."""
    assert count_pages_from_selection("1-3,9-12,11,10", 10) == 4


@pytest.mark.parametrize("selection", ["1-100", "11"])
def test_selection_beyond_document_raises(selection):
    with pytest.raises(InvalidPageRange):
        count_pages_from_selection(selection, 10)


def test_selection_with_no_printable_pages_raises():
    with pytest.raises(InvalidPageRange):
        count_pages_from_selection("0,abc,4-2", 10)


def test_document_without_pages_raises():
    with pytest.raises(InvalidPageRange):
        count_pages_from_selection("all", 0)


# ---------------------------------------------------------------------------
# Cost
# ---------------------------------------------------------------------------


def test_black_cost_for_ten_pages_two_copies():
    """10 pages × 2 copies at 1.0 per page costs 20.0."""
    quote = calculate_cost(10, PrintSpec(copies=2, color_mode="black"), RATES)
    assert quote.pages_to_print == 10
    assert quote.rate_per_page == 1.0
    assert quote.cost == 20.0


def test_color_rate_applies_to_selection():
    quote = calculate_cost(10, PrintSpec(page_selection="1-3", color_mode="color"), RATES)
    assert quote.pages_to_print == 3
    assert quote.cost == 15.0


def test_out_of_range_selection_is_never_priced():
    with pytest.raises(InvalidPageRange):
        calculate_cost(10, PrintSpec(page_selection="1-100"), RATES)


def test_rates_from_settings_match_defaults():
    rates = Rates.from_settings()
    assert rates.for_mode("black") == 1.0
    assert rates.for_mode("color") == 5.0


# ---------------------------------------------------------------------------
# Print settings
# ---------------------------------------------------------------------------


def test_spec_defaults():
    spec = PrintSpec.parse(None)
    assert spec.copies == 1
    assert spec.page_selection == "all"
    assert spec.page_size == "A4"
    assert spec.color_mode == "black"
    assert spec.duplex is False


@pytest.mark.parametrize(
    "data",
    [
        {"copies": 0},
        {"copies": 51},
        {"page_size": "B5"},
        {"color_mode": "sepia"},
        {"orientation": "diagonal"},
    ],
)
def test_invalid_settings_raise_invalid_print_spec(data):
    with pytest.raises(InvalidPrintSpec):
        PrintSpec.parse(data)
