from datetime import date, timedelta

import pytest

from periods import (
    add_months,
    fatura_closing_date,
    fatura_month_for,
    fatura_window,
    month_period,
    parse_year_month,
    payment_due_date,
    shift_date_by_months,
)


def test_closing_day_boundary_both_sides() -> None:
    assert fatura_month_for(date(2025, 3, 14), 15) == "2025-03"
    assert fatura_month_for(date(2025, 3, 15), 15) == "2025-04"


def test_december_purchase_after_closing_rolls_into_next_year() -> None:
    assert fatura_month_for(date(2025, 12, 20), 10) == "2026-01"


@pytest.mark.parametrize("closing_day", range(1, 29))
def test_every_day_of_a_year_lands_in_its_statement_window(closing_day) -> None:
    day = date(2024, 1, 1)
    while day.year == 2024:
        month = fatura_month_for(day, closing_day)
        window = fatura_window(month, closing_day)
        assert window.contains(day), (day, closing_day, month)
        day += timedelta(days=1)


@pytest.mark.parametrize("closing_day", [1, 15, 28])
def test_statement_windows_are_contiguous(closing_day) -> None:
    month = "2024-01"
    for _ in range(24):
        current = fatura_window(month, closing_day)
        following = fatura_window(add_months(month, 1), closing_day)
        assert following.start == current.end + timedelta(days=1)
        assert current.end + timedelta(days=1) == fatura_closing_date(month, closing_day)
        month = add_months(month, 1)


def test_payment_due_date_follows_closing_day() -> None:
    assert payment_due_date("2025-03", 22, 15) == date(2025, 3, 22)
    assert payment_due_date("2025-03", 5, 15) == date(2025, 4, 5)
    assert payment_due_date("2025-12", 10, 10) == date(2026, 1, 10)


@pytest.mark.parametrize("closing_day", [0, 29, 31, -1])
def test_closing_day_out_of_range_is_rejected(closing_day) -> None:
    with pytest.raises(ValueError):
        fatura_month_for(date(2025, 1, 10), closing_day)


def test_month_helpers() -> None:
    assert add_months("2025-01", -1) == "2024-12"
    assert add_months("2025-11", 14) == "2027-01"
    assert shift_date_by_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert shift_date_by_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    period = month_period("2024-02")
    assert (period.start, period.end) == (date(2024, 2, 1), date(2024, 2, 29))
    with pytest.raises(ValueError):
        parse_year_month("2025-13")
