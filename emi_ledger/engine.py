"""Core calculation engine for EMI loans.

This module implements the closed-form solver that converts between
(principal, rate, tenure) and (principal, rate, EMI), and the generator that
expands a solved loan into its amortization schedule. Both reducing-balance
and flat (fixed) interest loans are supported. Every monetary figure is
rounded half-up to two decimals as soon as it is computed so that long
schedules do not drift.

All functions here are pure: they hold no state and may be called from any
thread. ``generate_amortization_schedule`` is memoized on its inputs.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Optional, Tuple, Union

from .data_models import AmortizationRow, InterestType, LoanSummary
from .exceptions import InvalidLoanTermsError, MissingLoanTermsError, UnpayableEMIError
from .utils import ZERO, Number, ceil_months, monthly_rate, round_currency, to_decimal

logger = logging.getLogger(__name__)

SCHEDULE_CACHE_SIZE = 256


def _interest_type(value: Union[InterestType, str]) -> InterestType:
    try:
        return InterestType(value)
    except ValueError as exc:
        raise InvalidLoanTermsError(f"Unknown interest type: {value}") from exc


def _validate_principal(principal: Decimal) -> None:
    if principal <= 0:
        raise InvalidLoanTermsError("Principal must be positive")


def _validate_rate(annual_rate: Decimal) -> None:
    if annual_rate < 0:
        raise InvalidLoanTermsError("Interest rate cannot be negative")


def _whole_months(tenure_months: Number) -> int:
    months = to_decimal(tenure_months)
    if months != months.to_integral_value() or months <= 0:
        raise InvalidLoanTermsError("Tenure must be a positive whole number of months")
    return int(months)


def calculate_emi(
    principal: Number,
    annual_rate_percent: Number,
    tenure_months: int,
    interest_type: Union[InterestType, str] = InterestType.REDUCING,
) -> Decimal:
    """Return the equated monthly installment for a loan.

    For reducing-balance loans the formula is:

        emi = P * r * (1 + r)^n / ((1 + r)^n - 1)

    where ``P`` is the principal, ``r`` the monthly rate and ``n`` the tenure
    in months. When the rate is zero the EMI is simply ``P / n``. Flat-rate
    loans spread the principal plus ``P * r * n`` of interest evenly.
    """
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate_percent)
    _validate_principal(principal)
    _validate_rate(annual_rate)
    n = _whole_months(tenure_months)

    r = monthly_rate(annual_rate)
    if _interest_type(interest_type) is InterestType.FIXED:
        return round_currency((principal + principal * r * n) / n)
    if r == 0:
        return round_currency(principal / n)
    factor = (1 + r) ** n
    return round_currency(principal * r * factor / (factor - 1))


def calculate_tenure_months(
    principal: Number,
    annual_rate_percent: Number,
    emi: Number,
    interest_type: Union[InterestType, str] = InterestType.REDUCING,
) -> int:
    """Return the number of months needed to repay ``principal`` at ``emi``.

    The reducing-balance inverse is

        n = ln(emi / (emi - P * r)) / ln(1 + r)

    rounded up to the next whole month. A zero rate gives ``ceil(P / emi)``.

    Raises
    ------
    UnpayableEMIError
        If the EMI does not exceed the first period's interest, so the
        balance would never fall.
    """
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate_percent)
    emi = to_decimal(emi)
    _validate_principal(principal)
    _validate_rate(annual_rate)
    if emi <= 0:
        raise InvalidLoanTermsError("EMI must be positive")

    r = monthly_rate(annual_rate)
    first_interest = principal * r
    if r != 0 and emi <= first_interest:
        logger.debug("EMI %s does not cover first-period interest %s", emi, first_interest)
        raise UnpayableEMIError(
            f"EMI {emi} does not cover the first month's interest of {round_currency(first_interest)}"
        )
    if r == 0:
        return ceil_months(principal / emi)
    if _interest_type(interest_type) is InterestType.FIXED:
        return ceil_months(principal / (emi - first_interest))
    months = (emi / (emi - first_interest)).ln() / (1 + r).ln()
    return ceil_months(months)


def calculate_loan_summary(
    principal: Number,
    annual_rate_percent: Number,
    tenure_months: Optional[int] = None,
    emi: Optional[Number] = None,
    interest_type: Union[InterestType, str] = InterestType.REDUCING,
) -> LoanSummary:
    """Solve the missing loan term and compute lifetime totals.

    Exactly one of ``tenure_months`` or ``emi`` is expected. When both are
    given the tenure wins and the EMI is recomputed from it.
    """
    if not tenure_months and not emi:
        raise MissingLoanTermsError("Either tenure_months or emi must be provided")

    principal = to_decimal(principal)
    if tenure_months:
        solved_emi = calculate_emi(principal, annual_rate_percent, tenure_months, interest_type)
        solved_tenure = _whole_months(tenure_months)
    else:
        solved_emi = round_currency(emi)
        solved_tenure = calculate_tenure_months(principal, annual_rate_percent, solved_emi, interest_type)

    total_payable = round_currency(solved_emi * solved_tenure)
    total_interest = round_currency(total_payable - principal)
    return LoanSummary(
        emi=solved_emi,
        tenure_months=solved_tenure,
        total_payable=total_payable,
        total_interest=total_interest,
    )


def generate_amortization_schedule(
    principal: Number,
    annual_rate_percent: Number,
    emi: Number,
    tenure_months: int,
    interest_type: Union[InterestType, str] = InterestType.REDUCING,
) -> Tuple[AmortizationRow, ...]:
    """Expand a solved loan into its month-by-month schedule.

    Parameters
    ----------
    principal: Number
        The amount still to be amortized.
    annual_rate_percent: Number
        Nominal annual interest rate in percent.
    emi: Number
        The installment paid each month.
    tenure_months: int
        Number of rows to produce.
    interest_type: InterestType
        ``reducing`` or ``fixed``.

    Returns
    -------
    Tuple[AmortizationRow, ...]
        Exactly ``tenure_months`` rows. The final row (or an earlier row
        whose principal share would overshoot the balance) carries the
        remaining balance as its principal, so the schedule always ends at
        zero and its principal components add up to ``principal``.
    """
    return _schedule(
        round_currency(principal),
        to_decimal(annual_rate_percent),
        round_currency(emi),
        _whole_months(tenure_months),
        _interest_type(interest_type),
    )


@lru_cache(maxsize=SCHEDULE_CACHE_SIZE)
def _schedule(
    principal: Decimal,
    annual_rate: Decimal,
    emi: Decimal,
    tenure_months: int,
    interest_type: InterestType,
) -> Tuple[AmortizationRow, ...]:
    _validate_principal(principal)
    _validate_rate(annual_rate)
    if emi <= 0:
        raise InvalidLoanTermsError("EMI must be positive")

    r = monthly_rate(annual_rate)
    flat_interest = round_currency(principal * r)
    outstanding = principal
    rows = []
    for month in range(1, tenure_months + 1):
        if outstanding <= 0:
            rows.append(AmortizationRow(month, ZERO, ZERO, ZERO, ZERO))
            continue
        if interest_type is InterestType.FIXED:
            interest = flat_interest
        else:
            interest = round_currency(outstanding * r)
        principal_component = round_currency(emi - interest)
        if principal_component <= 0 and month < tenure_months:
            raise UnpayableEMIError(
                f"EMI {emi} does not cover interest of {interest} in month {month}"
            )
        payment = emi
        # last-EMI adjustment: retire exactly what is left
        if principal_component > outstanding or month == tenure_months:
            principal_component = outstanding
            payment = round_currency(principal_component + interest)
        outstanding = max(ZERO, round_currency(outstanding - principal_component))
        rows.append(
            AmortizationRow(
                month=month,
                emi=payment,
                principal_component=principal_component,
                interest_component=interest,
                outstanding_principal=outstanding,
            )
        )
    return tuple(rows)


def schedule_interest(rows) -> Decimal:
    """Sum the interest components of a sequence of schedule rows."""
    return round_currency(sum((row.interest_component for row in rows), ZERO))
