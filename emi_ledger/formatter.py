"""Output helpers for the EMI ledger.

This module renders loan summaries, amortization schedules and ledger state
in a tabular text format, and exports schedules to JSON or CSV. Rendering
goes through ``click.echo`` so output can be captured by the CLI runner.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

import click

from .data_models import (
    AmortizationRow,
    EarlyClosureResult,
    InstallmentView,
    LoanSummary,
    LoanView,
    PaymentReceipt,
    PrepaymentResult,
)
from .utils import format_money


def print_summary(summary: LoanSummary) -> None:
    """Print solved loan terms in a human-readable format."""
    click.echo("Summary")
    click.echo("-" * 72)
    click.echo(f"EMI                : {format_money(summary.emi)}")
    click.echo(f"Tenure (months)    : {summary.tenure_months}")
    click.echo(f"Total payable      : {format_money(summary.total_payable)}")
    click.echo(f"Total interest     : {format_money(summary.total_interest)}")
    click.echo("-" * 72)


def print_schedule(schedule: Iterable[AmortizationRow]) -> None:
    """Print an amortization schedule as a simple table."""
    headers = ["Month", "EMI", "Principal", "Interest", "Outstanding"]
    click.echo("\t".join(headers))
    for row in schedule:
        click.echo(
            "\t".join(
                [
                    str(row.month),
                    format_money(row.emi),
                    format_money(row.principal_component),
                    format_money(row.interest_component),
                    format_money(row.outstanding_principal),
                ]
            )
        )


def print_prepayment(result: PrepaymentResult) -> None:
    click.echo("Prepayment")
    click.echo("-" * 72)
    click.echo(f"New EMI            : {format_money(result.new_emi)}")
    click.echo(f"New tenure         : {result.new_tenure_months} months")
    click.echo(f"Interest saved     : {format_money(result.total_interest_saved)}")
    click.echo("-" * 72)


def print_closure(result: EarlyClosureResult) -> None:
    click.echo("Early closure")
    click.echo("-" * 72)
    click.echo(f"Closure amount     : {format_money(result.closure_amount)}")
    if result.foreclosure_fee:
        click.echo(f"Foreclosure fee    : {format_money(result.foreclosure_fee)}")
    click.echo(f"Interest saved     : {format_money(result.interest_saved)}")
    click.echo("-" * 72)


def print_loan(loan: LoanView) -> None:
    """Print a loan's terms and progress."""
    click.echo(f"Loan #{loan.id} - {loan.lender_name} [{loan.status.value}]")
    click.echo("-" * 72)
    if loan.loan_type:
        click.echo(f"Type               : {loan.loan_type}")
    click.echo(f"Principal          : {format_money(loan.principal_amount)}")
    click.echo(f"Rate               : {loan.interest_rate.normalize():f}% ({loan.interest_type.value})")
    click.echo(f"EMI                : {format_money(loan.emi_amount)}")
    click.echo(f"Tenure (months)    : {loan.tenure_months}")
    click.echo(f"Start              : {loan.start_date.strftime('%Y-%m')}")
    click.echo(f"Total payable      : {format_money(loan.total_payable)}")
    click.echo(f"Total interest     : {format_money(loan.total_interest)}")
    click.echo(f"Outstanding        : {format_money(loan.outstanding_principal)}")
    click.echo(f"Installments paid  : {loan.paid_installments}/{loan.paid_installments + loan.unpaid_installments}")
    click.echo(f"Prepayment         : {loan.prepayment_strategy.value}")
    click.echo("-" * 72)


def print_loans(loans: Sequence[LoanView]) -> None:
    click.echo(f"{'ID':>4s} {'Lender':20s} {'Status':13s} {'EMI':>12s} {'Outstanding':>14s}")
    for loan in loans:
        click.echo(
            f"{loan.id:>4d} {loan.lender_name[:20]:20s} {loan.status.value:13s} "
            f"{format_money(loan.emi_amount):>12s} {format_money(loan.outstanding_principal):>14s}"
        )


def print_installments(installments: Iterable[InstallmentView]) -> None:
    """Print ledger installments, marking the ones already paid."""
    headers = ["Period", "Month", "EMI", "Principal", "Interest", "Outstanding", "Paid"]
    click.echo("\t".join(headers))
    for row in installments:
        click.echo(
            "\t".join(
                [
                    str(row.period),
                    row.installment_month.strftime("%Y-%m"),
                    format_money(row.emi_amount),
                    format_money(row.principal_component),
                    format_money(row.interest_component),
                    format_money(row.outstanding_principal),
                    "Yes" if row.paid else "No",
                ]
            )
        )


def print_receipt(receipt: PaymentReceipt) -> None:
    installment = receipt.installment
    click.echo(
        f"Settled installment {installment.period} "
        f"({installment.installment_month.strftime('%Y-%m')}) with {format_money(receipt.amount)}"
    )
    if receipt.shortfall:
        click.echo(f"Shortfall not carried forward: {format_money(receipt.shortfall)}")
    if receipt.prepayment is not None:
        click.echo(f"Prepaid against principal ({receipt.strategy.value}): {format_money(receipt.prepayment_amount)}")
        print_prepayment(receipt.prepayment)
    if receipt.unapplied_amount:
        click.echo(f"Unapplied amount   : {format_money(receipt.unapplied_amount)}")
    if receipt.loan is not None:
        click.echo(f"Loan status        : {receipt.loan.status.value}")
        click.echo(f"Outstanding        : {format_money(receipt.loan.outstanding_principal)}")


def schedule_to_dicts(schedule: Iterable[AmortizationRow]) -> List[Dict[str, Any]]:
    """Convert schedule rows into JSON-serialisable dictionaries."""
    return [
        {
            "month": row.month,
            "emi": format_money(row.emi),
            "principal": format_money(row.principal_component),
            "interest": format_money(row.interest_component),
            "outstanding": format_money(row.outstanding_principal),
        }
        for row in schedule
    ]


def summary_to_dict(summary: LoanSummary) -> Dict[str, Any]:
    return {
        "emi": format_money(summary.emi),
        "tenure_months": summary.tenure_months,
        "total_payable": format_money(summary.total_payable),
        "total_interest": format_money(summary.total_interest),
    }


def export_to_json(path: Path, schedule: Sequence[AmortizationRow], summary: LoanSummary) -> None:
    """Export schedule and summary to a JSON file."""
    data = {"summary": summary_to_dict(summary), "schedule": schedule_to_dicts(schedule)}
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def export_to_csv(path: Path, schedule: Sequence[AmortizationRow]) -> None:
    """Export schedule to a CSV file."""
    header = ["Month", "EMI", "Principal", "Interest", "Outstanding"]
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for row in schedule_to_dicts(schedule):
            writer.writerow([row["month"], row["emi"], row["principal"], row["interest"], row["outstanding"]])
