"""Utility functions for the EMI ledger.

This module provides helpers for turning user input into ``Decimal`` values,
for the half-up currency rounding applied to every computed figure, and for
handling calendar months (adding months, normalizing year-month strings to
``datetime.date`` instances).
"""

from __future__ import annotations

import calendar
from datetime import date
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from .exceptions import InvalidLoanTermsError

CENT = Decimal("0.01")
RATE_STEP = Decimal("0.0001")
ZERO = Decimal("0")
HUNDRED = Decimal("100")
MONTHS_PER_YEAR = Decimal("12")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert ``value`` to a finite ``Decimal`` without binary float artefacts.

    Floats are routed through ``str`` so that ``0.1`` becomes ``Decimal("0.1")``
    rather than its exact binary expansion. Anything that is not a finite
    number raises ``InvalidLoanTermsError``.
    """
    if not isinstance(value, Decimal):
        if isinstance(value, float):
            value = repr(value)
        try:
            value = Decimal(str(value).strip().replace(",", ""))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidLoanTermsError(f"Invalid numeric value: {value}") from exc
    if not value.is_finite():
        raise InvalidLoanTermsError(f"Invalid numeric value: {value}")
    return value


def round_currency(value: Number) -> Decimal:
    """Round a monetary value half-up to two decimal places."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_rate(value: Number) -> Decimal:
    """Round an annual percentage rate half-up to the four places the ledger keeps."""
    return to_decimal(value).quantize(RATE_STEP, rounding=ROUND_HALF_UP)


def ceil_months(value: Decimal) -> int:
    """Round a fractional month count up to the next whole month.

    Noise below a millionth of a month is discarded first, so a solver result
    such as ``12.0000000001`` counts as 12 months.
    """
    trimmed = value.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)
    return int(trimmed.to_integral_value(rounding=ROUND_CEILING))


def monthly_rate(annual_rate_percent: Number) -> Decimal:
    """Return the monthly decimal rate for an annual percentage rate."""
    return to_decimal(annual_rate_percent) / MONTHS_PER_YEAR / HUNDRED


def parse_year_month(ym: str) -> date:
    """Parse a YYYY-MM string into a ``date`` object (first day of month).

    Parameters
    ----------
    ym: str
        A string in the form ``"YYYY-MM"``. The day component, if present,
        will be ignored.

    Returns
    -------
    date
        A date object representing the first day of the specified month.

    Raises
    ------
    ValueError
        If the string is not a valid year-month.
    """
    try:
        parts = ym.split("-")
        if len(parts) < 2:
            raise ValueError
        year = int(parts[0])
        month = int(parts[1])
        return date(year, month, 1)
    except Exception as exc:
        raise ValueError(f"Invalid year-month string: {ym}") from exc


def month_start(dt: date) -> date:
    """Normalize a date to the first day of its month."""
    return dt.replace(day=1)


def add_months(dt: date, months: int) -> date:
    """Return a new date a number of months after ``dt``.

    The day of the month is clamped to the last valid day if needed (e.g.,
    adding one month to Jan 31 yields Feb 28 or 29).
    """
    year = dt.year + (dt.month - 1 + months) // 12
    month = (dt.month - 1 + months) % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def format_money(value: Decimal) -> str:
    """Render a monetary ``Decimal`` with exactly two decimals."""
    return f"{round_currency(value):.2f}"
