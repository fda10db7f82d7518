"""Tests for the loan ledger: creation, payments, prepayments, edits, closure."""

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from decimal import Decimal

import pytest

from emi_ledger.config import LedgerConfig
from emi_ledger.data_models import InterestType, LoanStatus, PrepaymentStrategy
from emi_ledger.engine import calculate_emi, generate_amortization_schedule
from emi_ledger.exceptions import (
    InvalidAmountError,
    InvalidLoanTermsError,
    LoanClosedError,
    LoanLockedError,
    LoanNotFoundError,
    MissingLoanTermsError,
    NoOutstandingInstallmentError,
    UnpayableEMIError,
)
from emi_ledger.ledger import LoanLedger

EMI = Decimal("8791.59")


def _unpaid(ledger, loan_id):
    return [row for row in ledger.get_schedule(loan_id) if not row.paid]


class TestCreateLoan:
    def test_solves_emi_and_totals(self, standard_loan) -> None:
        assert standard_loan.emi_amount == EMI
        assert standard_loan.tenure_months == 12
        assert standard_loan.total_payable == Decimal("105499.08")
        assert standard_loan.total_interest == Decimal("5499.08")
        assert standard_loan.outstanding_principal == Decimal("100000.00")
        assert standard_loan.status is LoanStatus.ACTIVE
        assert standard_loan.interest_type is InterestType.REDUCING
        assert standard_loan.revision == 1

    def test_materializes_full_schedule(self, ledger, standard_loan) -> None:
        rows = ledger.get_schedule(standard_loan.id)

        assert [row.period for row in rows] == list(range(1, 13))
        assert rows[0].installment_month == date(2025, 1, 1)
        assert rows[-1].installment_month == date(2025, 12, 1)
        assert not any(row.paid for row in rows)
        assert sum(row.principal_component for row in rows) == Decimal("100000.00")

    def test_solves_tenure_from_emi(self, ledger) -> None:
        loan = ledger.create_loan("SBI", 100000, 10, "2025-01", emi=EMI)

        assert loan.tenure_months == 12
        assert loan.emi_amount == EMI
        assert loan.unpaid_installments == 12

    def test_normalizes_start_to_month(self, ledger) -> None:
        loan = ledger.create_loan("SBI", 12000, 0, date(2025, 3, 17), tenure_months=12)
        assert loan.start_date == date(2025, 3, 1)

    def test_rate_is_rounded_once_to_four_places(self, ledger) -> None:
        loan = ledger.create_loan("SBI", 100000, "8.33345", "2025-01", tenure_months=12)
        rate = Decimal("8.3335")

        assert ledger.get_loan(loan.id).interest_rate == rate
        assert loan.emi_amount == calculate_emi(100000, rate, 12)
        expected = generate_amortization_schedule(100000, rate, loan.emi_amount, 12)
        rows = ledger.get_schedule(loan.id)
        assert [row.interest_component for row in rows] == [row.interest_component for row in expected]

    def test_rate_edit_is_rounded(self, ledger, standard_loan) -> None:
        loan = ledger.update_loan(standard_loan.id, annual_rate="9.87654")
        assert loan.interest_rate == Decimal("9.8765")
        assert loan.emi_amount == calculate_emi(100000, Decimal("9.8765"), 12)

    def test_uses_configured_default_strategy(self, store) -> None:
        ledger = LoanLedger(store, LedgerConfig(default_prepayment_strategy="reduce_emi"))
        loan = ledger.create_loan("SBI", 12000, 0, "2025-01", tenure_months=12)
        assert loan.prepayment_strategy is PrepaymentStrategy.REDUCE_EMI

    def test_missing_terms_persist_nothing(self, ledger) -> None:
        with pytest.raises(MissingLoanTermsError):
            ledger.create_loan("SBI", 100000, 10, "2025-01")
        assert ledger.list_loans() == []

    def test_unpayable_emi(self, ledger) -> None:
        with pytest.raises(UnpayableEMIError):
            ledger.create_loan("SBI", 100000, 12, "2025-01", emi=1000)

    def test_requires_lender_name(self, ledger) -> None:
        with pytest.raises(InvalidLoanTermsError):
            ledger.create_loan("  ", 100000, 10, "2025-01", tenure_months=12)


class TestRecordPayment:
    def test_settles_earliest_installment(self, ledger, standard_loan) -> None:
        receipt = ledger.record_payment(standard_loan.id, EMI)

        assert receipt.installment.period == 1
        assert receipt.installment.paid is True
        assert isinstance(receipt.installment.paid_at, datetime)
        assert receipt.shortfall == 0
        assert receipt.prepayment is None
        assert receipt.loan.outstanding_principal == Decimal("92041.74")
        assert receipt.loan.paid_installments == 1
        assert receipt.loan.revision == 2

    def test_payments_follow_period_order(self, ledger, standard_loan) -> None:
        periods = [ledger.record_payment(standard_loan.id, EMI).installment.period for _ in range(3)]
        assert periods == [1, 2, 3]

    def test_underpayment_still_settles_installment(self, ledger, standard_loan) -> None:
        receipt = ledger.record_payment(standard_loan.id, 500)

        assert receipt.installment.period == 1
        assert receipt.installment.paid is True
        assert receipt.shortfall == Decimal("8291.59")
        assert ledger.get_schedule(standard_loan.id)[0].paid is True
        assert ledger.get_loan(standard_loan.id).status is LoanStatus.ACTIVE

    def test_last_payment_completes_loan(self, ledger, standard_loan) -> None:
        for _ in range(12):
            receipt = ledger.record_payment(standard_loan.id, EMI)

        assert receipt.loan.status is LoanStatus.COMPLETED
        assert receipt.loan.outstanding_principal == 0
        with pytest.raises(NoOutstandingInstallmentError):
            ledger.record_payment(standard_loan.id, EMI)

    def test_rejects_non_positive_amount(self, ledger, standard_loan) -> None:
        with pytest.raises(InvalidAmountError):
            ledger.record_payment(standard_loan.id, 0)

    def test_unknown_loan(self, ledger) -> None:
        with pytest.raises(LoanNotFoundError):
            ledger.record_payment(999, EMI)

    def test_concurrent_payments_settle_distinct_installments(self, ledger, standard_loan) -> None:
        with ThreadPoolExecutor(max_workers=6) as pool:
            receipts = list(pool.map(lambda _: ledger.record_payment(standard_loan.id, EMI), range(12)))

        periods = sorted(receipt.installment.period for receipt in receipts)
        assert periods == list(range(1, 13))
        loan = ledger.get_loan(standard_loan.id)
        assert loan.status is LoanStatus.COMPLETED
        assert loan.paid_installments == 12


class TestPrepayment:
    def test_reduce_tenure_rewrites_future_installments(self, ledger, standard_loan) -> None:
        receipt = ledger.record_payment(standard_loan.id, EMI + 50000)

        assert receipt.strategy is PrepaymentStrategy.REDUCE_TENURE
        assert receipt.prepayment_amount == Decimal("50000.00")
        assert receipt.prepayment.new_emi == EMI
        assert receipt.prepayment.new_tenure_months == 5
        assert receipt.prepayment.total_interest_saved > 0

        loan = ledger.get_loan(standard_loan.id)
        assert loan.emi_amount == EMI
        assert loan.tenure_months == 6
        assert loan.outstanding_principal == Decimal("42041.74")
        assert loan.total_payable - loan.total_interest == loan.principal_amount
        assert loan.total_interest < standard_loan.total_interest

        future = _unpaid(ledger, standard_loan.id)
        assert [row.period for row in future] == [2, 3, 4, 5, 6]
        assert future[0].installment_month == date(2025, 2, 1)
        assert sum(row.principal_component for row in future) == Decimal("42041.74")
        assert future[-1].outstanding_principal == 0

    def test_reduce_emi_override(self, ledger, standard_loan) -> None:
        receipt = ledger.record_payment(standard_loan.id, EMI + 50000, strategy="reduce_emi")

        new_emi = calculate_emi(Decimal("42041.74"), 10, 11)
        assert receipt.prepayment.new_emi == new_emi
        assert receipt.prepayment.new_tenure_months == 11

        loan = ledger.get_loan(standard_loan.id)
        assert loan.emi_amount == new_emi
        assert loan.tenure_months == 12
        future = _unpaid(ledger, standard_loan.id)
        assert len(future) == 11
        assert future[0].emi_amount == new_emi

    def test_reduce_emi_leaving_one_cent(self, ledger, zero_rate_loan) -> None:
        receipt = ledger.record_payment(zero_rate_loan.id, Decimal("11999.99"), strategy="reduce_emi")

        assert receipt.prepayment_amount == Decimal("10999.99")
        assert receipt.prepayment.new_emi == Decimal("0.01")
        assert receipt.prepayment.new_tenure_months == 1

        loan = ledger.get_loan(zero_rate_loan.id)
        assert loan.status is LoanStatus.ACTIVE
        assert loan.outstanding_principal == Decimal("0.01")
        assert loan.tenure_months == 2
        future = _unpaid(ledger, zero_rate_loan.id)
        assert [(row.period, row.emi_amount) for row in future] == [(2, Decimal("0.01"))]

        final = ledger.record_payment(zero_rate_loan.id, Decimal("0.01"))
        assert final.loan.status is LoanStatus.COMPLETED

    def test_loan_strategy_is_used_by_default(self, ledger) -> None:
        loan = ledger.create_loan(
            "SBI", 100000, 10, "2025-01", tenure_months=12, prepayment_strategy="reduce_emi"
        )
        receipt = ledger.record_payment(loan.id, EMI + 10000)
        assert receipt.strategy is PrepaymentStrategy.REDUCE_EMI

    def test_prepayment_beyond_balance_completes_loan(self, ledger, standard_loan) -> None:
        receipt = ledger.record_payment(standard_loan.id, 200000)

        assert receipt.prepayment.new_tenure_months == 0
        assert receipt.prepayment_amount == Decimal("92041.74")
        assert receipt.unapplied_amount == Decimal("99166.67")

        loan = ledger.get_loan(standard_loan.id)
        assert loan.status is LoanStatus.COMPLETED
        assert loan.outstanding_principal == 0
        assert loan.tenure_months == 1
        assert loan.unpaid_installments == 0
        assert loan.total_interest == Decimal("833.33")

    def test_excess_on_last_installment_is_unapplied(self, ledger, zero_rate_loan) -> None:
        for _ in range(11):
            ledger.record_payment(zero_rate_loan.id, 1000)
        receipt = ledger.record_payment(zero_rate_loan.id, 1500)

        assert receipt.unapplied_amount == Decimal("500.00")
        assert receipt.prepayment is None
        assert receipt.loan.status is LoanStatus.COMPLETED

    def test_failed_rewrite_leaves_ledger_untouched(self, ledger, standard_loan, monkeypatch) -> None:
        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr("emi_ledger.ledger.generate_amortization_schedule", boom)
        with pytest.raises(RuntimeError):
            ledger.record_payment(standard_loan.id, EMI + 50000)

        loan = ledger.get_loan(standard_loan.id)
        assert loan.paid_installments == 0
        assert loan.outstanding_principal == Decimal("100000.00")
        assert loan.revision == standard_loan.revision
        assert len(ledger.get_schedule(standard_loan.id)) == 12


class TestUpdateLoan:
    @pytest.mark.parametrize(
        "change",
        [
            {"principal": 90000},
            {"annual_rate": 9},
            {"tenure_months": 24},
            {"start_date": "2025-06"},
            {"interest_type": "fixed"},
        ],
    )
    def test_financial_edit_after_payment_is_locked(self, ledger, standard_loan, change) -> None:
        ledger.record_payment(standard_loan.id, EMI)
        with pytest.raises(LoanLockedError):
            ledger.update_loan(standard_loan.id, **change)

    def test_lender_name_edit_after_payment(self, ledger, standard_loan) -> None:
        ledger.record_payment(standard_loan.id, EMI)
        loan = ledger.update_loan(standard_loan.id, lender_name="HDFC Ltd")

        assert loan.lender_name == "HDFC Ltd"
        assert loan.emi_amount == EMI
        assert loan.paid_installments == 1

    def test_locked_edit_changes_nothing(self, ledger, standard_loan) -> None:
        ledger.record_payment(standard_loan.id, EMI)
        with pytest.raises(LoanLockedError):
            ledger.update_loan(standard_loan.id, lender_name="Other", principal=1)
        assert ledger.get_loan(standard_loan.id).lender_name == "HDFC Bank"

    def test_regenerates_schedule_before_payments(self, ledger, standard_loan) -> None:
        loan = ledger.update_loan(standard_loan.id, tenure_months=24)

        assert loan.tenure_months == 24
        assert loan.emi_amount == calculate_emi(100000, 10, 24)
        assert loan.outstanding_principal == Decimal("100000.00")
        rows = ledger.get_schedule(standard_loan.id)
        assert [row.period for row in rows] == list(range(1, 25))
        assert sum(row.principal_component for row in rows) == Decimal("100000.00")

    def test_moves_start_date(self, ledger, standard_loan) -> None:
        ledger.update_loan(standard_loan.id, start_date=date(2025, 6, 1))
        rows = ledger.get_schedule(standard_loan.id)
        assert rows[0].installment_month == date(2025, 6, 1)

    def test_new_principal_resets_outstanding(self, ledger, standard_loan) -> None:
        loan = ledger.update_loan(standard_loan.id, principal=50000)

        assert loan.principal_amount == Decimal("50000.00")
        assert loan.outstanding_principal == Decimal("50000.00")
        assert loan.emi_amount == Decimal("4395.79")

    def test_strategy_edit_after_payment(self, ledger, standard_loan) -> None:
        ledger.record_payment(standard_loan.id, EMI)
        loan = ledger.update_loan(standard_loan.id, prepayment_strategy="reduce_emi")
        assert loan.prepayment_strategy is PrepaymentStrategy.REDUCE_EMI


class TestEarlyClosure:
    def test_quote_does_not_close(self, ledger, standard_loan) -> None:
        ledger.record_payment(standard_loan.id, EMI)
        ledger.record_payment(standard_loan.id, EMI)
        loan = ledger.get_loan(standard_loan.id)
        remaining_interest = sum(row.interest_component for row in _unpaid(ledger, standard_loan.id))

        quote = ledger.quote_early_closure(standard_loan.id)

        assert quote.closure_amount == loan.outstanding_principal
        assert quote.interest_saved == remaining_interest
        assert ledger.get_loan(standard_loan.id).status is LoanStatus.ACTIVE

    def test_close_discards_unpaid_installments(self, ledger, standard_loan) -> None:
        ledger.record_payment(standard_loan.id, EMI)
        outstanding = ledger.get_loan(standard_loan.id).outstanding_principal

        result = ledger.close_early(standard_loan.id, foreclosure_fee_percent=2)

        assert result.closure_amount == (outstanding * Decimal("1.02")).quantize(Decimal("0.01"))
        loan = ledger.get_loan(standard_loan.id)
        assert loan.status is LoanStatus.CLOSED_EARLY
        assert loan.outstanding_principal == 0
        assert loan.unpaid_installments == 0
        assert loan.paid_installments == 1
        assert loan.tenure_months == 1

    def test_uses_configured_fee(self, store) -> None:
        ledger = LoanLedger(store, LedgerConfig(foreclosure_fee_percent="1"))
        loan = ledger.create_loan("SBI", 100000, 10, "2025-01", tenure_months=12)

        result = ledger.close_early(loan.id)

        assert result.foreclosure_fee == Decimal("1000.00")
        assert result.closure_amount == Decimal("101000.00")

    def test_closed_loan_is_terminal(self, ledger, standard_loan) -> None:
        ledger.close_early(standard_loan.id)

        with pytest.raises(NoOutstandingInstallmentError):
            ledger.record_payment(standard_loan.id, EMI)
        with pytest.raises(LoanClosedError):
            ledger.close_early(standard_loan.id)
        with pytest.raises(LoanClosedError):
            ledger.update_loan(standard_loan.id, principal=1000)

    def test_completed_loan_cannot_be_closed(self, ledger, zero_rate_loan) -> None:
        for _ in range(12):
            ledger.record_payment(zero_rate_loan.id, 1000)
        with pytest.raises(LoanClosedError):
            ledger.close_early(zero_rate_loan.id)


class TestQueries:
    def test_list_loans_newest_first(self, ledger, standard_loan, zero_rate_loan) -> None:
        ids = [loan.id for loan in ledger.list_loans()]
        assert ids == [zero_rate_loan.id, standard_loan.id]

    def test_list_loans_by_household(self, ledger, standard_loan, zero_rate_loan) -> None:
        loans = ledger.list_loans("house-001")
        assert [loan.id for loan in loans] == [standard_loan.id]

    def test_installments_between(self, ledger, standard_loan, zero_rate_loan) -> None:
        rows = ledger.installments_between("2025-03", "2025-04")

        assert len(rows) == 4
        assert {row.installment_month for row in rows} == {date(2025, 3, 1), date(2025, 4, 1)}

    def test_installments_between_for_household(self, ledger, standard_loan, zero_rate_loan) -> None:
        rows = ledger.installments_between("2025-01", "2025-12", household_id="house-002")

        assert len(rows) == 12
        assert {row.loan_id for row in rows} == {zero_rate_loan.id}

    def test_installments_between_rejects_reversed_window(self, ledger) -> None:
        with pytest.raises(InvalidLoanTermsError):
            ledger.installments_between("2025-05", "2025-01")

    def test_delete_loan(self, ledger, standard_loan) -> None:
        ledger.delete_loan(standard_loan.id)

        with pytest.raises(LoanNotFoundError):
            ledger.get_loan(standard_loan.id)
        assert ledger.installments_between("2025-01", "2025-12") == []

    def test_get_unknown_loan(self, ledger) -> None:
        with pytest.raises(LoanNotFoundError):
            ledger.get_schedule(42)
