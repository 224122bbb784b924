"""Calendar helpers for year-months and credit card statement periods.

Every function here is pure: a statement period is fully determined by the
card's closing day, so the same inputs always map to the same statement.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def parse_year_month(year_month: str) -> tuple[int, int]:
    match = _YEAR_MONTH_RE.match(year_month or "")
    if not match:
        raise ValueError(f"Invalid year-month {year_month!r} (expected YYYY-MM)")
    return int(match.group(1)), int(match.group(2))


def format_year_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def year_month_of(day: date) -> str:
    return format_year_month(day.year, day.month)


def add_months(year_month: str, months: int) -> str:
    year, month = parse_year_month(year_month)
    index = year * 12 + (month - 1) + months
    return format_year_month(index // 12, index % 12 + 1)


def shift_date_by_months(day: date, months: int) -> date:
    """Move a date by whole months, clamping the day to the target month's end."""
    year, month = parse_year_month(add_months(year_month_of(day), months))
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def month_period(year_month: str) -> Period:
    year, month = parse_year_month(year_month)
    last_day = calendar.monthrange(year, month)[1]
    return Period(year_month, date(year, month, 1), date(year, month, last_day))


def current_year_month(today: Optional[date] = None) -> str:
    return year_month_of(today or date.today())


def fatura_month_for(purchase_date: date, closing_day: int) -> str:
    """Statement month a purchase belongs to.

    The statement closes at the start of ``closing_day``: purchases made before
    it stay on the current month's statement, purchases on or after it roll
    into the next month's.
    """
    _check_billing_day(closing_day, "closing_day")
    month = year_month_of(purchase_date)
    if purchase_date.day >= closing_day:
        return add_months(month, 1)
    return month


def fatura_closing_date(year_month: str, closing_day: int) -> date:
    """Closing date of a statement, exclusive.

    Purchases on this day already belong to the next statement, so the last
    day of the statement window is the day before.
    """
    _check_billing_day(closing_day, "closing_day")
    year, month = parse_year_month(year_month)
    return date(year, month, closing_day)


def fatura_window(year_month: str, closing_day: int) -> Period:
    """Purchase dates that land on the statement for ``year_month``."""
    start = fatura_closing_date(add_months(year_month, -1), closing_day)
    end = fatura_closing_date(year_month, closing_day) - timedelta(days=1)
    return Period(year_month, start, end)


def payment_due_date(year_month: str, payment_due_day: int, closing_day: int) -> date:
    """Due date of a statement.

    A due day on or before the closing day falls in the following month, since
    the bill cannot be due before the statement closes.
    """
    _check_billing_day(payment_due_day, "payment_due_day")
    _check_billing_day(closing_day, "closing_day")
    if payment_due_day <= closing_day:
        year, month = parse_year_month(add_months(year_month, 1))
    else:
        year, month = parse_year_month(year_month)
    return date(year, month, payment_due_day)


def _check_billing_day(day: int, name: str) -> None:
    if not isinstance(day, int) or isinstance(day, bool) or not 1 <= day <= 28:
        raise ValueError(f"{name} must be an integer between 1 and 28")
