"""The loan ledger: stateful bookkeeping on top of the pure calculators.

``LoanLedger`` creates loans with their full installment schedule, records
payments against the earliest unpaid installment, routes overpayments
through the prepayment engine, regenerates schedules when terms change and
forecloses loans on request.

Every mutating operation runs under a per-loan lock and inside a single
database transaction, so two payments against the same loan can never
settle the same installment and a failed operation leaves no partial rows
behind. Operations on different loans do not block each other.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

from .config import LedgerConfig
from .data_models import (
    AmortizationRow,
    EarlyClosureResult,
    InstallmentView,
    InterestType,
    LoanStatus,
    LoanView,
    PaymentReceipt,
    PrepaymentStrategy,
)
from .engine import calculate_loan_summary, generate_amortization_schedule, schedule_interest
from .exceptions import (
    InvalidAmountError,
    InvalidLoanTermsError,
    LoanClosedError,
    LoanLockedError,
    NoOutstandingInstallmentError,
)
from .prepayment import apply_prepayment, calculate_early_closure
from .store import InstallmentModel, LoanModel, LoanRepository, LoanStore, utcnow
from .utils import ZERO, Number, add_months, month_start, parse_year_month, round_currency, round_rate

logger = logging.getLogger(__name__)

FINANCIAL_FIELDS = ("principal", "annual_rate", "tenure_months", "start_date", "interest_type")

MonthLike = Union[date, str]


def _coerce_month(value: MonthLike) -> date:
    if isinstance(value, str):
        return parse_year_month(value)
    return month_start(value)


def _coerce_interest_type(value: Union[InterestType, str]) -> InterestType:
    try:
        return InterestType(value)
    except ValueError as exc:
        raise InvalidLoanTermsError(f"Unknown interest type: {value}") from exc


def _coerce_strategy(value: Union[PrepaymentStrategy, str]) -> PrepaymentStrategy:
    try:
        return PrepaymentStrategy(value)
    except ValueError as exc:
        raise InvalidLoanTermsError(f"Unknown prepayment strategy: {value}") from exc


def _require_name(lender_name: str) -> str:
    name = (lender_name or "").strip()
    if not name:
        raise InvalidLoanTermsError("Lender name is required")
    return name


def installment_rows(
    loan_id: int,
    start_date: date,
    first_period: int,
    schedule: Sequence[AmortizationRow],
) -> List[InstallmentModel]:
    """Map schedule rows onto installment rows numbered from ``first_period``."""
    rows = []
    for entry in schedule:
        period = first_period + entry.month - 1
        rows.append(
            InstallmentModel(
                loan_id=loan_id,
                period=period,
                installment_month=add_months(start_date, period - 1),
                emi_amount=entry.emi,
                principal_component=entry.principal_component,
                interest_component=entry.interest_component,
                outstanding_principal=entry.outstanding_principal,
                paid=False,
                paid_at=None,
            )
        )
    return rows


def installment_view(row: InstallmentModel) -> InstallmentView:
    return InstallmentView(
        id=row.id,
        loan_id=row.loan_id,
        period=row.period,
        installment_month=row.installment_month,
        emi_amount=row.emi_amount,
        principal_component=row.principal_component,
        interest_component=row.interest_component,
        outstanding_principal=row.outstanding_principal,
        paid=row.paid,
        paid_at=row.paid_at,
    )


def loan_view(loan: LoanModel, installments: Iterable[InstallmentModel]) -> LoanView:
    installments = list(installments)
    paid = sum(1 for row in installments if row.paid)
    return LoanView(
        id=loan.id,
        household_id=loan.household_id,
        lender_name=loan.lender_name,
        loan_type=loan.loan_type,
        principal_amount=loan.principal_amount,
        interest_rate=loan.interest_rate,
        tenure_months=loan.tenure_months,
        emi_amount=loan.emi_amount,
        start_date=loan.start_date,
        total_interest=loan.total_interest,
        total_payable=loan.total_payable,
        outstanding_principal=loan.outstanding_principal,
        status=LoanStatus(loan.status),
        interest_type=InterestType(loan.interest_type),
        prepayment_strategy=PrepaymentStrategy(loan.prepayment_strategy),
        created_at=loan.created_at,
        revision=loan.revision,
        paid_installments=paid,
        unpaid_installments=len(installments) - paid,
    )


def _interest_paid(installments: Iterable[InstallmentModel]) -> Decimal:
    return round_currency(sum((row.interest_component for row in installments if row.paid), ZERO))


class LoanLedger:
    """Stateful orchestrator for loans and their installments."""

    def __init__(self, store: LoanStore, config: Optional[LedgerConfig] = None) -> None:
        self.store = store
        self.config = config or LedgerConfig()
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, loan_id: int) -> Iterator[LoanRepository]:
        """Serialize work on one loan and run it in a single transaction."""
        with self._locks_guard:
            lock = self._locks.setdefault(loan_id, threading.Lock())
        with lock:
            with self.store.transaction() as repo:
                yield repo

    # -- creation -----------------------------------------------------------

    def create_loan(
        self,
        lender_name: str,
        principal: Number,
        annual_rate: Number,
        start_date: MonthLike,
        tenure_months: Optional[int] = None,
        emi: Optional[Number] = None,
        loan_type: Optional[str] = None,
        interest_type: Union[InterestType, str] = InterestType.REDUCING,
        prepayment_strategy: Optional[Union[PrepaymentStrategy, str]] = None,
        household_id: Optional[str] = None,
    ) -> LoanView:
        """Create a loan and materialize its full installment schedule.

        Exactly one of ``tenure_months`` or ``emi`` is expected; the other is
        solved for. When an EMI is supplied it becomes the loan's EMI and the
        tenure is the number of months it takes to repay the principal.
        """
        name = _require_name(lender_name)
        principal = round_currency(principal)
        rate = round_rate(annual_rate)
        itype = _coerce_interest_type(interest_type)
        strategy = _coerce_strategy(prepayment_strategy or self.config.default_prepayment_strategy)
        start = _coerce_month(start_date)

        summary = calculate_loan_summary(principal, rate, tenure_months, emi, itype)
        schedule = generate_amortization_schedule(
            principal, rate, summary.emi, summary.tenure_months, itype
        )

        with self.store.transaction() as repo:
            loan = repo.add_loan(
                household_id=household_id,
                lender_name=name,
                loan_type=loan_type,
                principal_amount=principal,
                interest_rate=rate,
                tenure_months=summary.tenure_months,
                emi_amount=summary.emi,
                start_date=start,
                total_interest=summary.total_interest,
                total_payable=summary.total_payable,
                outstanding_principal=principal,
                status=LoanStatus.ACTIVE.value,
                interest_type=itype.value,
                prepayment_strategy=strategy.value,
            )
            rows = repo.add_installments(installment_rows(loan.id, start, 1, schedule))
            view = loan_view(loan, rows)

        logger.info(
            "Created loan %s from %s: principal=%s emi=%s tenure=%s",
            view.id,
            name,
            principal,
            summary.emi,
            summary.tenure_months,
            extra={"loan_id": view.id},
        )
        return view

    # -- payments -----------------------------------------------------------

    def record_payment(
        self,
        loan_id: int,
        amount: Number,
        strategy: Optional[Union[PrepaymentStrategy, str]] = None,
        paid_at: Optional[datetime] = None,
    ) -> PaymentReceipt:
        """Settle the earliest unpaid installment and apply any excess.

        Any amount at or below the installment's EMI settles it in full; the
        difference is reported as ``shortfall`` but not carried forward.
        An amount above the EMI settles the installment and the excess is
        prepaid against principal using ``strategy`` (or the loan's own
        strategy), rewriting every later unpaid installment.
        """
        amount = round_currency(amount)
        if amount <= 0:
            raise InvalidAmountError("Payment amount must be positive")

        with self._locked(loan_id) as repo:
            loan = repo.get_loan(loan_id, for_update=True)
            unpaid = repo.list_unpaid_installments(loan_id)
            if not unpaid:
                logger.warning(
                    "Payment of %s rejected: loan %s has no unpaid installment",
                    amount,
                    loan_id,
                    extra={"loan_id": loan_id},
                )
                raise NoOutstandingInstallmentError(f"Loan {loan_id} has no unpaid installment")

            current, future = unpaid[0], unpaid[1:]
            current.paid = True
            current.paid_at = paid_at or utcnow()
            repo.session.flush()

            outstanding = max(ZERO, round_currency(loan.outstanding_principal - current.principal_component))
            receipt = PaymentReceipt(installment=installment_view(current), amount=amount)
            fields: Dict[str, object] = {"outstanding_principal": outstanding}

            if amount < current.emi_amount:
                receipt.shortfall = round_currency(current.emi_amount - amount)
                logger.warning(
                    "Installment %s of loan %s settled by %s, %s below its EMI",
                    current.period,
                    loan_id,
                    amount,
                    receipt.shortfall,
                    extra={"loan_id": loan_id},
                )

            excess = round_currency(amount - current.emi_amount)
            completed = not future
            if excess > 0 and (not future or outstanding <= 0):
                receipt.unapplied_amount = excess
            elif excess > 0:
                completed = self._apply_excess(repo, loan, current, future, outstanding, excess, strategy, receipt, fields)

            if completed:
                fields["status"] = LoanStatus.COMPLETED.value
                fields["outstanding_principal"] = round_currency(ZERO)

            repo.update_loan_totals(loan_id, fields)
            receipt.loan = loan_view(loan, repo.list_installments(loan_id))

        logger.info(
            "Recorded payment of %s on loan %s installment %s (prepaid %s)",
            amount,
            loan_id,
            current.period,
            receipt.prepayment_amount,
            extra={"loan_id": loan_id},
        )
        if completed:
            logger.info("Loan %s completed", loan_id, extra={"loan_id": loan_id})
        return receipt

    def _apply_excess(
        self,
        repo: LoanRepository,
        loan: LoanModel,
        current: InstallmentModel,
        future: List[InstallmentModel],
        outstanding: Decimal,
        excess: Decimal,
        strategy: Optional[Union[PrepaymentStrategy, str]],
        receipt: PaymentReceipt,
        fields: Dict[str, object],
    ) -> bool:
        """Prepay ``excess`` and rewrite the future schedule; True if retired."""
        chosen = _coerce_strategy(strategy or loan.prepayment_strategy)
        itype = InterestType(loan.interest_type)
        result = apply_prepayment(
            outstanding_principal=outstanding,
            annual_rate=loan.interest_rate,
            current_emi=loan.emi_amount,
            remaining_tenure=len(future),
            prepayment_amount=excess,
            strategy=chosen,
            original_total_interest=schedule_interest(future),
            interest_type=itype,
        )
        receipt.prepayment = result
        receipt.strategy = chosen
        interest_paid = _interest_paid(repo.list_installments(loan.id))

        if result.new_tenure_months == 0:
            receipt.prepayment_amount = outstanding
            receipt.unapplied_amount = round_currency(excess - outstanding)
            repo.delete_installments(loan.id, unpaid_only=True)
            fields.update(
                tenure_months=current.period,
                total_interest=interest_paid,
                total_payable=round_currency(loan.principal_amount + interest_paid),
            )
            return True

        new_principal = round_currency(outstanding - excess)
        schedule = generate_amortization_schedule(
            new_principal, loan.interest_rate, result.new_emi, result.new_tenure_months, itype
        )
        rows = repo.replace_future_installments(
            loan.id,
            current.period + 1,
            installment_rows(loan.id, loan.start_date, current.period + 1, schedule),
        )
        receipt.prepayment_amount = excess
        receipt.regenerated = [installment_view(row) for row in rows]

        total_interest = round_currency(interest_paid + schedule_interest(schedule))
        fields.update(
            emi_amount=result.new_emi,
            tenure_months=current.period + result.new_tenure_months,
            outstanding_principal=new_principal,
            total_interest=total_interest,
            total_payable=round_currency(loan.principal_amount + total_interest),
        )
        logger.info(
            "Prepaid %s on loan %s (%s): emi %s -> %s, remaining tenure %s -> %s",
            excess,
            loan.id,
            chosen.value,
            loan.emi_amount,
            result.new_emi,
            len(future),
            result.new_tenure_months,
            extra={"loan_id": loan.id},
        )
        return False

    # -- edits --------------------------------------------------------------

    def update_loan(
        self,
        loan_id: int,
        *,
        lender_name: Optional[str] = None,
        loan_type: Optional[str] = None,
        household_id: Optional[str] = None,
        prepayment_strategy: Optional[Union[PrepaymentStrategy, str]] = None,
        principal: Optional[Number] = None,
        annual_rate: Optional[Number] = None,
        tenure_months: Optional[int] = None,
        start_date: Optional[MonthLike] = None,
        interest_type: Optional[Union[InterestType, str]] = None,
    ) -> LoanView:
        """Edit a loan.

        Lender name, loan type, household and prepayment strategy can always
        change. Financial terms can only change while no installment has
        been paid; the schedule is then solved afresh from the tenure and
        regenerated.
        """
        fields: Dict[str, object] = {}
        if lender_name is not None:
            fields["lender_name"] = _require_name(lender_name)
        if loan_type is not None:
            fields["loan_type"] = loan_type
        if household_id is not None:
            fields["household_id"] = household_id
        if prepayment_strategy is not None:
            fields["prepayment_strategy"] = _coerce_strategy(prepayment_strategy).value

        financial = {
            "principal": principal,
            "annual_rate": annual_rate,
            "tenure_months": tenure_months,
            "start_date": start_date,
            "interest_type": interest_type,
        }
        financial = {name: value for name, value in financial.items() if value is not None}

        with self._locked(loan_id) as repo:
            loan = repo.get_loan(loan_id, for_update=True)
            if financial:
                if LoanStatus(loan.status).is_terminal:
                    raise LoanClosedError(f"Loan {loan_id} is {loan.status}")
                if repo.count_paid_installments(loan_id) > 0:
                    logger.warning(
                        "Rejected edit of %s on loan %s: payments exist",
                        sorted(financial),
                        loan_id,
                        extra={"loan_id": loan_id},
                    )
                    raise LoanLockedError(f"Cannot edit financial details of loan {loan_id}: it has payments")
                fields.update(self._resolve_terms(loan, **financial))
                repo.delete_installments(loan_id)

            repo.update_loan_totals(loan_id, fields)
            if financial:
                schedule = generate_amortization_schedule(
                    loan.principal_amount,
                    loan.interest_rate,
                    loan.emi_amount,
                    loan.tenure_months,
                    loan.interest_type,
                )
                repo.add_installments(installment_rows(loan_id, loan.start_date, 1, schedule))
            view = loan_view(loan, repo.list_installments(loan_id))

        changed = ", ".join(sorted(fields)) or "no changes"
        logger.info("Updated loan %s: %s", loan_id, changed, extra={"loan_id": loan_id})
        return view

    @staticmethod
    def _resolve_terms(loan: LoanModel, **changes) -> Dict[str, object]:
        itype = _coerce_interest_type(changes.get("interest_type", loan.interest_type))
        principal = round_currency(changes.get("principal", loan.principal_amount))
        rate = round_rate(changes.get("annual_rate", loan.interest_rate))
        tenure = changes.get("tenure_months", loan.tenure_months)
        start = _coerce_month(changes["start_date"]) if "start_date" in changes else loan.start_date
        summary = calculate_loan_summary(principal, rate, tenure_months=tenure, interest_type=itype)
        return {
            "principal_amount": principal,
            "interest_rate": rate,
            "tenure_months": summary.tenure_months,
            "emi_amount": summary.emi,
            "start_date": start,
            "interest_type": itype.value,
            "total_payable": summary.total_payable,
            "total_interest": summary.total_interest,
            "outstanding_principal": principal,
        }

    # -- foreclosure --------------------------------------------------------

    def quote_early_closure(
        self, loan_id: int, foreclosure_fee_percent: Optional[Number] = None
    ) -> EarlyClosureResult:
        """Payoff figure for closing the loan today, without closing it."""
        with self.store.transaction() as repo:
            loan = repo.get_loan(loan_id)
            return self._closure(loan, repo.list_unpaid_installments(loan_id), foreclosure_fee_percent)

    def close_early(
        self, loan_id: int, foreclosure_fee_percent: Optional[Number] = None
    ) -> EarlyClosureResult:
        """Foreclose the loan: report the payoff and discard unpaid installments."""
        with self._locked(loan_id) as repo:
            loan = repo.get_loan(loan_id, for_update=True)
            unpaid = repo.list_unpaid_installments(loan_id)
            result = self._closure(loan, unpaid, foreclosure_fee_percent)

            installments = repo.list_installments(loan_id)
            interest_paid = _interest_paid(installments)
            repo.delete_installments(loan_id, unpaid_only=True)
            repo.update_loan_totals(
                loan_id,
                {
                    "status": LoanStatus.CLOSED_EARLY.value,
                    "outstanding_principal": round_currency(ZERO),
                    "tenure_months": len(installments) - len(unpaid),
                    "total_interest": interest_paid,
                    "total_payable": round_currency(loan.principal_amount + interest_paid),
                },
            )

        logger.info(
            "Closed loan %s early for %s (interest saved %s)",
            loan_id,
            result.closure_amount,
            result.interest_saved,
            extra={"loan_id": loan_id},
        )
        return result

    def _closure(
        self,
        loan: LoanModel,
        unpaid: Sequence[InstallmentModel],
        foreclosure_fee_percent: Optional[Number],
    ) -> EarlyClosureResult:
        if LoanStatus(loan.status).is_terminal:
            raise LoanClosedError(f"Loan {loan.id} is already {loan.status}")
        fee = self.config.foreclosure_fee_percent if foreclosure_fee_percent is None else foreclosure_fee_percent
        return calculate_early_closure(loan.outstanding_principal, schedule_interest(unpaid), fee)

    # -- queries ------------------------------------------------------------

    def get_loan(self, loan_id: int) -> LoanView:
        with self.store.transaction() as repo:
            loan = repo.get_loan(loan_id)
            return loan_view(loan, repo.list_installments(loan_id))

    def list_loans(self, household_id: Optional[str] = None) -> List[LoanView]:
        """Loans newest first, optionally limited to one household."""
        with self.store.transaction() as repo:
            return [
                loan_view(loan, repo.list_installments(loan.id))
                for loan in repo.list_loans(household_id)
            ]

    def get_schedule(self, loan_id: int) -> List[InstallmentView]:
        with self.store.transaction() as repo:
            repo.get_loan(loan_id)
            return [installment_view(row) for row in repo.list_installments(loan_id)]

    def installments_between(
        self, start: MonthLike, end: MonthLike, household_id: Optional[str] = None
    ) -> List[InstallmentView]:
        """Installments due in the months from ``start`` to ``end`` inclusive."""
        first = _coerce_month(start)
        last = _coerce_month(end)
        if last < first:
            raise InvalidLoanTermsError("End month is before start month")
        with self.store.transaction() as repo:
            return [installment_view(row) for row in repo.installments_between(first, last, household_id)]

    def delete_loan(self, loan_id: int) -> None:
        with self._locked(loan_id) as repo:
            repo.delete_loan(loan_id)
        with self._locks_guard:
            self._locks.pop(loan_id, None)
        logger.info("Deleted loan %s", loan_id, extra={"loan_id": loan_id})
