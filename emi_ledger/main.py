"""Command-line interface for the EMI ledger.

This module uses the ``click`` library to implement a multi-command
interface. The top-level commands are pure calculators (EMI, tenure,
schedule, prepayment, early closure). The ``loan`` group works against a
database of loans: create them, record payments, edit and foreclose them.
Schedules can be printed to the terminal or exported to JSON/CSV files.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click

from .config import LedgerConfig
from .data_models import InterestType, PrepaymentStrategy
from .engine import calculate_emi, calculate_loan_summary, calculate_tenure_months, generate_amortization_schedule
from .exceptions import LoanLedgerError
from .formatter import (
    export_to_csv,
    export_to_json,
    print_closure,
    print_installments,
    print_loan,
    print_loans,
    print_prepayment,
    print_receipt,
    print_schedule,
    print_summary,
)
from .ledger import LoanLedger
from .logging import setup_logging
from .prepayment import apply_prepayment, calculate_early_closure
from .store import LoanStore
from .utils import format_money, parse_year_month, to_decimal

logger = logging.getLogger(__name__)

INTEREST_TYPES = click.Choice([t.value for t in InterestType])
STRATEGIES = click.Choice([s.value for s in PrepaymentStrategy])


def parse_amount(value: str):
    """Parse a numeric string with optional suffixes.

    Accepts plain numbers ("500000") and shorthand with ``k``/``m`` suffixes
    (e.g., "500k" meaning 500_000). Returns a ``Decimal``.
    """
    value = value.strip().lower()
    value = value.replace(",", "")
    factor = 1
    if value.endswith("k"):
        factor = 1_000
        value = value[:-1]
    elif value.endswith("m"):
        factor = 1_000_000
        value = value[:-1]
    try:
        return to_decimal(value) * factor
    except ValueError:
        raise click.BadParameter(f"Invalid amount: {value}")


class AmountType(click.ParamType):
    name = "amount"

    def convert(self, value, param, ctx):
        if value is None or not isinstance(value, str):
            return value
        return parse_amount(value)


class MonthType(click.ParamType):
    name = "YYYY-MM"

    def convert(self, value, param, ctx):
        if not isinstance(value, str):
            return value
        try:
            return parse_year_month(value)
        except ValueError as exc:
            self.fail(str(exc), param, ctx)


AMOUNT = AmountType()
MONTH = MonthType()


def _ledger(ctx: click.Context) -> LoanLedger:
    obj = ctx.ensure_object(dict)
    if "ledger" not in obj:
        config: LedgerConfig = obj["config"]
        obj["ledger"] = LoanLedger(LoanStore(config.database_url), config)
    return obj["ledger"]


@click.group()
@click.option("--database", "database", envvar="EMI_LEDGER_DATABASE_URL", help="SQLAlchemy database URL")
@click.option("--log-level", "log_level", default=None, help="Logging level (DEBUG, INFO, ...)")
@click.pass_context
def cli(ctx: click.Context, database: Optional[str], log_level: Optional[str]) -> None:
    """An EMI loan calculator and payment ledger."""
    config = LedgerConfig.from_env()
    if database:
        config.database_url = database
    if log_level:
        config.log_level = log_level
    setup_logging(config.log_level, config.log_format)
    ctx.ensure_object(dict)["config"] = config


@cli.command()
@click.option("--principal", "-p", "principal", required=True, type=AMOUNT, help="Loan amount")
@click.option("--rate", "-r", "rate", required=True, type=AMOUNT, help="Annual interest rate (percent)")
@click.option("--tenure", "-t", "tenure", required=True, type=int, help="Tenure in months")
@click.option("--type", "interest_type", type=INTEREST_TYPES, default="reducing", help="Interest type")
def emi(principal, rate, tenure: int, interest_type: str) -> None:
    """Compute the EMI for a principal, rate and tenure."""
    click.echo(format_money(_run(calculate_emi, principal, rate, tenure, interest_type)))


@cli.command()
@click.option("--principal", "-p", "principal", required=True, type=AMOUNT, help="Loan amount")
@click.option("--rate", "-r", "rate", required=True, type=AMOUNT, help="Annual interest rate (percent)")
@click.option("--emi", "-e", "emi_amount", required=True, type=AMOUNT, help="Monthly installment")
@click.option("--type", "interest_type", type=INTEREST_TYPES, default="reducing", help="Interest type")
def tenure(principal, rate, emi_amount, interest_type: str) -> None:
    """Compute how many months an EMI takes to repay a principal."""
    click.echo(str(_run(calculate_tenure_months, principal, rate, emi_amount, interest_type)))


@cli.command()
@click.option("--principal", "-p", "principal", required=True, type=AMOUNT, help="Loan amount")
@click.option("--rate", "-r", "rate", required=True, type=AMOUNT, help="Annual interest rate (percent)")
@click.option("--tenure", "-t", "tenure", type=int, help="Tenure in months")
@click.option("--emi", "-e", "emi_amount", type=AMOUNT, help="Monthly installment")
@click.option("--type", "interest_type", type=INTEREST_TYPES, default="reducing", help="Interest type")
@click.option("--output", "output", type=str, help="Output file path (.json or .csv)")
@click.option("--summary-only", is_flag=True, help="Print only the summary")
def schedule(principal, rate, tenure, emi_amount, interest_type, output, summary_only) -> None:
    """Solve a loan and print its full amortization schedule."""
    summary = _run(calculate_loan_summary, principal, rate, tenure, emi_amount, interest_type)
    rows = _run(generate_amortization_schedule, principal, rate, summary.emi, summary.tenure_months, interest_type)
    if output:
        path = Path(output)
        if path.suffix.lower() == ".json":
            export_to_json(path, rows, summary)
        elif path.suffix.lower() == ".csv":
            export_to_csv(path, rows)
        else:
            raise click.BadParameter("Unsupported output format; use .json or .csv")
        click.echo(f"Schedule exported to {path}")
        return
    print_summary(summary)
    if not summary_only:
        print_schedule(rows)


@cli.command()
@click.option("--outstanding", "-o", "outstanding", required=True, type=AMOUNT, help="Outstanding principal")
@click.option("--rate", "-r", "rate", required=True, type=AMOUNT, help="Annual interest rate (percent)")
@click.option("--emi", "-e", "emi_amount", required=True, type=AMOUNT, help="Current EMI")
@click.option("--remaining", "remaining", required=True, type=int, help="Remaining installments")
@click.option("--amount", "-a", "amount", required=True, type=AMOUNT, help="Prepayment amount")
@click.option("--strategy", "strategy", type=STRATEGIES, required=True, help="What the prepayment reduces")
@click.option("--baseline-interest", "baseline", type=AMOUNT, help="Interest still scheduled (default: EMI x remaining - outstanding)")
def prepay(outstanding, rate, emi_amount, remaining, amount, strategy, baseline) -> None:
    """Show the effect of a lump-sum prepayment."""
    if baseline is None:
        baseline = emi_amount * remaining - outstanding
    print_prepayment(_run(apply_prepayment, outstanding, rate, emi_amount, remaining, amount, strategy, baseline))


@cli.command()
@click.option("--outstanding", "-o", "outstanding", required=True, type=AMOUNT, help="Outstanding principal")
@click.option("--remaining-interest", "remaining_interest", required=True, type=AMOUNT, help="Interest still scheduled")
@click.option("--fee", "fee", type=AMOUNT, default="0", help="Foreclosure fee (percent)")
def closure(outstanding, remaining_interest, fee) -> None:
    """Compute the payoff for foreclosing a loan today."""
    print_closure(_run(calculate_early_closure, outstanding, remaining_interest, fee))


@cli.group()
def loan() -> None:
    """Manage loans stored in the ledger database."""


@loan.command("create")
@click.option("--lender", "lender", required=True, help="Lender name")
@click.option("--principal", "-p", "principal", required=True, type=AMOUNT, help="Loan amount")
@click.option("--rate", "-r", "rate", required=True, type=AMOUNT, help="Annual interest rate (percent)")
@click.option("--start-date", "-s", "start_date", required=True, type=MONTH, help="First installment month (YYYY-MM)")
@click.option("--tenure", "-t", "tenure", type=int, help="Tenure in months")
@click.option("--emi", "-e", "emi_amount", type=AMOUNT, help="Monthly installment")
@click.option("--loan-type", "loan_type", help="Free-text loan type (home, car, ...)")
@click.option("--type", "interest_type", type=INTEREST_TYPES, default="reducing", help="Interest type")
@click.option("--strategy", "strategy", type=STRATEGIES, help="Prepayment strategy for this loan")
@click.option("--household", "household", help="Household identifier")
@click.pass_context
def loan_create(ctx, lender, principal, rate, start_date, tenure, emi_amount, loan_type, interest_type, strategy, household) -> None:
    """Create a loan and its installment schedule."""
    view = _run(
        _ledger(ctx).create_loan,
        lender,
        principal,
        rate,
        start_date,
        tenure_months=tenure,
        emi=emi_amount,
        loan_type=loan_type,
        interest_type=interest_type,
        prepayment_strategy=strategy,
        household_id=household,
    )
    print_loan(view)


@loan.command("list")
@click.option("--household", "household", help="Only loans of this household")
@click.pass_context
def loan_list(ctx, household) -> None:
    """List loans, newest first."""
    print_loans(_run(_ledger(ctx).list_loans, household))


@loan.command("show")
@click.argument("loan_id", type=int)
@click.option("--schedule", "with_schedule", is_flag=True, help="Also print the installments")
@click.pass_context
def loan_show(ctx, loan_id: int, with_schedule: bool) -> None:
    """Show a loan and optionally its installments."""
    ledger = _ledger(ctx)
    print_loan(_run(ledger.get_loan, loan_id))
    if with_schedule:
        print_installments(_run(ledger.get_schedule, loan_id))


@loan.command("pay")
@click.argument("loan_id", type=int)
@click.argument("amount", type=AMOUNT)
@click.option("--strategy", "strategy", type=STRATEGIES, help="Override the loan's prepayment strategy")
@click.pass_context
def loan_pay(ctx, loan_id: int, amount, strategy) -> None:
    """Record a payment against the next unpaid installment."""
    print_receipt(_run(_ledger(ctx).record_payment, loan_id, amount, strategy))


@loan.command("update")
@click.argument("loan_id", type=int)
@click.option("--lender", "lender", help="Lender name")
@click.option("--loan-type", "loan_type", help="Free-text loan type")
@click.option("--strategy", "strategy", type=STRATEGIES, help="Prepayment strategy")
@click.option("--principal", "-p", "principal", type=AMOUNT, help="Loan amount")
@click.option("--rate", "-r", "rate", type=AMOUNT, help="Annual interest rate (percent)")
@click.option("--tenure", "-t", "tenure", type=int, help="Tenure in months")
@click.option("--start-date", "-s", "start_date", type=MONTH, help="First installment month (YYYY-MM)")
@click.option("--type", "interest_type", type=INTEREST_TYPES, help="Interest type")
@click.pass_context
def loan_update(ctx, loan_id, lender, loan_type, strategy, principal, rate, tenure, start_date, interest_type) -> None:
    """Edit a loan. Financial terms are locked once a payment exists."""
    view = _run(
        _ledger(ctx).update_loan,
        loan_id,
        lender_name=lender,
        loan_type=loan_type,
        prepayment_strategy=strategy,
        principal=principal,
        annual_rate=rate,
        tenure_months=tenure,
        start_date=start_date,
        interest_type=interest_type,
    )
    print_loan(view)


@loan.command("close")
@click.argument("loan_id", type=int)
@click.option("--fee", "fee", type=AMOUNT, help="Foreclosure fee (percent)")
@click.option("--quote", is_flag=True, help="Only show the payoff, do not close")
@click.pass_context
def loan_close(ctx, loan_id: int, fee, quote: bool) -> None:
    """Foreclose a loan, discarding its unpaid installments."""
    ledger = _ledger(ctx)
    if quote:
        print_closure(_run(ledger.quote_early_closure, loan_id, fee))
        return
    print_closure(_run(ledger.close_early, loan_id, fee))
    click.echo(f"Loan {loan_id} closed early")


@loan.command("delete")
@click.argument("loan_id", type=int)
@click.confirmation_option(prompt="Delete this loan and all its installments?")
@click.pass_context
def loan_delete(ctx, loan_id: int) -> None:
    """Delete a loan and its installments."""
    _run(_ledger(ctx).delete_loan, loan_id)
    click.echo(f"Loan {loan_id} deleted")


def _run(func, *args, **kwargs):
    """Call into the ledger, turning its errors into clean CLI failures."""
    try:
        return func(*args, **kwargs)
    except LoanLedgerError as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":
    cli()
