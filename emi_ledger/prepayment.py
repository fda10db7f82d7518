"""Prepayment and early closure calculations.

A prepayment is a lump sum paid on top of the scheduled EMI that goes
straight to principal. The borrower either keeps the end date and pays a
smaller EMI (``reduce_emi``) or keeps the EMI and finishes earlier
(``reduce_tenure``). Early closure (foreclosure) pays the whole outstanding
principal at once, optionally with a fee.

These functions are pure arithmetic. The ledger supplies the baselines and
persists whatever they return.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Tuple, Union

from .data_models import (
    EarlyClosureResult,
    InterestType,
    PrepaymentResult,
    PrepaymentStrategy,
)
from .engine import calculate_emi, calculate_tenure_months, generate_amortization_schedule
from .exceptions import InvalidAmountError, InvalidLoanTermsError
from .utils import CENT, HUNDRED, ZERO, Number, monthly_rate, round_currency, to_decimal

logger = logging.getLogger(__name__)


def _strategy(value: Union[PrepaymentStrategy, str]) -> PrepaymentStrategy:
    try:
        return PrepaymentStrategy(value)
    except ValueError as exc:
        raise InvalidLoanTermsError(f"Unknown prepayment strategy: {value}") from exc


def recalc_emi_after_prepayment(
    reduced_principal: Number,
    annual_rate: Number,
    remaining_tenure: int,
    interest_type: Union[InterestType, str] = InterestType.REDUCING,
) -> Decimal:
    """EMI that retires ``reduced_principal`` over the unchanged remaining tenure."""
    return calculate_emi(reduced_principal, annual_rate, remaining_tenure, interest_type)


def recalc_tenure_after_prepayment(
    reduced_principal: Number,
    annual_rate: Number,
    current_emi: Number,
    interest_type: Union[InterestType, str] = InterestType.REDUCING,
) -> int:
    """Months needed to retire ``reduced_principal`` at the unchanged EMI."""
    return calculate_tenure_months(reduced_principal, annual_rate, current_emi, interest_type)


def _smallest_amortizing_emi(
    reduced_principal: Decimal,
    annual_rate: Number,
    remaining_tenure: int,
    interest_type: Union[InterestType, str],
) -> Tuple[Decimal, int]:
    """Cheapest whole-cent EMI that still pays down a tiny balance.

    The tenure is the number of months that EMI actually runs for, which can
    be shorter than ``remaining_tenure``.
    """
    first_interest = round_currency(reduced_principal * monthly_rate(annual_rate))
    emi = first_interest + CENT
    rows = generate_amortization_schedule(reduced_principal, annual_rate, emi, remaining_tenure, interest_type)
    return emi, sum(1 for row in rows if row.principal_component > 0)


def apply_prepayment(
    outstanding_principal: Number,
    annual_rate: Number,
    current_emi: Number,
    remaining_tenure: int,
    prepayment_amount: Number,
    strategy: Union[PrepaymentStrategy, str],
    original_total_interest: Number,
    interest_type: Union[InterestType, str] = InterestType.REDUCING,
) -> PrepaymentResult:
    """Recompute a loan's EMI or tenure after a lump-sum prepayment.

    Parameters
    ----------
    outstanding_principal: Number
        Principal still owed before the prepayment.
    annual_rate: Number
        Annual interest rate in percent.
    current_emi: Number
        The EMI currently being paid.
    remaining_tenure: int
        Installments left before the prepayment.
    prepayment_amount: Number
        The lump sum applied against principal.
    strategy: PrepaymentStrategy
        ``reduce_emi`` or ``reduce_tenure``.
    original_total_interest: Number
        Interest the borrower would have paid without the prepayment. The
        saving is measured against this baseline.

    Returns
    -------
    PrepaymentResult
        The new EMI and tenure. Under ``reduce_emi`` the tenure is exactly
        ``remaining_tenure``, unless the balance left is too small to spread
        over it at whole cents: it is then repaid at the smallest EMI that
        still reduces principal, over as many months as that takes. Under
        ``reduce_tenure`` the EMI is exactly ``current_emi``. A prepayment
        that covers the whole balance returns a zero EMI and tenure and saves
        all of the baseline interest.
    """
    outstanding = to_decimal(outstanding_principal)
    amount = to_decimal(prepayment_amount)
    current_emi = round_currency(current_emi)
    baseline = round_currency(original_total_interest)
    strategy = _strategy(strategy)
    if amount <= 0:
        raise InvalidAmountError("Prepayment amount must be positive")

    new_principal = round_currency(outstanding - amount)
    if new_principal <= 0:
        logger.debug("Prepayment of %s retires the outstanding %s", amount, outstanding)
        return PrepaymentResult(
            new_emi=round_currency(ZERO),
            new_tenure_months=0,
            total_interest_saved=baseline,
        )

    if strategy is PrepaymentStrategy.REDUCE_EMI:
        new_emi = recalc_emi_after_prepayment(new_principal, annual_rate, remaining_tenure, interest_type)
        new_tenure = int(remaining_tenure)
        if new_emi <= round_currency(new_principal * monthly_rate(annual_rate)):
            # balance too small to spread over the remaining months at whole cents
            new_emi, new_tenure = _smallest_amortizing_emi(new_principal, annual_rate, new_tenure, interest_type)
            logger.debug("Residual %s repaid at %s over %s months", new_principal, new_emi, new_tenure)
    else:
        new_emi = current_emi
        new_tenure = recalc_tenure_after_prepayment(new_principal, annual_rate, current_emi, interest_type)

    new_total_interest = new_emi * new_tenure - new_principal
    return PrepaymentResult(
        new_emi=new_emi,
        new_tenure_months=new_tenure,
        total_interest_saved=round_currency(baseline - new_total_interest),
    )


def calculate_early_closure(
    outstanding_principal: Number,
    remaining_interest: Number,
    foreclosure_fee_percent: Number = 0,
) -> EarlyClosureResult:
    """Return the lump sum that forecloses a loan today.

    The closure amount is the outstanding principal plus a flat fee of
    ``foreclosure_fee_percent`` of that principal. All of the interest still
    scheduled is saved.
    """
    outstanding = to_decimal(outstanding_principal)
    fee_percent = to_decimal(foreclosure_fee_percent)
    if outstanding < 0:
        raise InvalidAmountError("Outstanding principal cannot be negative")
    if fee_percent < 0:
        raise InvalidLoanTermsError("Foreclosure fee cannot be negative")

    fee = outstanding * fee_percent / HUNDRED
    return EarlyClosureResult(
        closure_amount=round_currency(outstanding + fee),
        interest_saved=round_currency(remaining_interest),
        foreclosure_fee=round_currency(fee),
    )
