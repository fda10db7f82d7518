"""Data models for the EMI ledger.

This module defines the value objects passed between the calculators and the
ledger: solved loan summaries, amortization rows, prepayment and early
closure results, and the read-only views the ledger hands back to callers.
Using dataclasses makes it easy to construct, inspect and serialize these
structures. Rows produced by the pure calculators are frozen so that memoized
schedules can be shared safely between threads.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class LoanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CLOSED_EARLY = "closed_early"

    @property
    def is_terminal(self) -> bool:
        return self is not LoanStatus.ACTIVE


class InterestType(str, Enum):
    """How interest accrues over the life of the loan.

    ``reducing`` charges each period's interest on the balance outstanding
    at the start of that period. ``fixed`` (a flat rate) charges interest on
    the original principal for the whole tenure.
    """

    REDUCING = "reducing"
    FIXED = "fixed"


class PrepaymentStrategy(str, Enum):
    """What a lump-sum prepayment shortens.

    ``reduce_emi`` keeps the end date and lowers the monthly installment.
    ``reduce_tenure`` keeps the monthly installment and pays off earlier.
    """

    REDUCE_EMI = "reduce_emi"
    REDUCE_TENURE = "reduce_tenure"


@dataclass(frozen=True)
class LoanSummary:
    """Solved terms of a loan: EMI, tenure and lifetime totals."""

    emi: Decimal
    tenure_months: int
    total_payable: Decimal
    total_interest: Decimal


@dataclass(frozen=True)
class AmortizationRow:
    """One period of an amortization schedule.

    ``emi`` equals the loan's EMI except on a final adjusted period, where it
    is the smaller amount that retires the remaining balance.
    """

    month: int
    emi: Decimal
    principal_component: Decimal
    interest_component: Decimal
    outstanding_principal: Decimal


@dataclass(frozen=True)
class PrepaymentResult:
    new_emi: Decimal
    new_tenure_months: int
    total_interest_saved: Decimal


@dataclass(frozen=True)
class EarlyClosureResult:
    """Lump sum needed to foreclose a loan and the interest it avoids."""

    closure_amount: Decimal
    interest_saved: Decimal
    foreclosure_fee: Decimal = Decimal("0.00")


@dataclass
class InstallmentView:
    """An installment row as seen by callers of the ledger."""

    id: int
    loan_id: int
    period: int
    installment_month: date
    emi_amount: Decimal
    principal_component: Decimal
    interest_component: Decimal
    outstanding_principal: Decimal
    paid: bool
    paid_at: Optional[datetime]


@dataclass
class LoanView:
    """A loan together with the figures derived from its installments."""

    id: int
    household_id: Optional[str]
    lender_name: str
    loan_type: Optional[str]
    principal_amount: Decimal
    interest_rate: Decimal
    tenure_months: int
    emi_amount: Decimal
    start_date: date
    total_interest: Decimal
    total_payable: Decimal
    outstanding_principal: Decimal
    status: LoanStatus
    interest_type: InterestType
    prepayment_strategy: PrepaymentStrategy
    created_at: datetime
    revision: int
    paid_installments: int = 0
    unpaid_installments: int = 0

    @property
    def has_payments(self) -> bool:
        return self.paid_installments > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["interest_type"] = self.interest_type.value
        data["prepayment_strategy"] = self.prepayment_strategy.value
        return data


@dataclass
class PaymentReceipt:
    """Outcome of recording a payment against a loan.

    Attributes
    ----------
    installment: InstallmentView
        The installment that the payment settled.
    amount: Decimal
        The amount the caller recorded.
    shortfall: Decimal
        How far ``amount`` fell below the installment's EMI. The installment
        is still settled in full; the shortfall is reported, not carried.
    prepayment: Optional[PrepaymentResult]
        Present when the amount exceeded the EMI and the excess was applied
        against principal.
    unapplied_amount: Decimal
        Any excess left over once the whole balance had been retired.
    loan: Optional[LoanView]
        The loan after the payment was applied.
    """

    installment: InstallmentView
    amount: Decimal
    shortfall: Decimal = Decimal("0.00")
    prepayment_amount: Decimal = Decimal("0.00")
    prepayment: Optional[PrepaymentResult] = None
    strategy: Optional[PrepaymentStrategy] = None
    unapplied_amount: Decimal = Decimal("0.00")
    loan: Optional[LoanView] = None
    regenerated: List[InstallmentView] = field(default_factory=list)
