"""JSON service exposing the EMI ledger to a UI.

Every route is a thin wrapper around ``LoanLedger``: it parses the request,
calls the ledger and serializes the result. Money travels as strings with
two decimals and months as ``YYYY-MM``. Ledger errors become JSON bodies of
the form ``{"error": ..., "kind": ...}`` with a status code matching their
category.
"""

import logging
import os
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from flask import Flask, jsonify, request

from emi_ledger.config import LedgerConfig
from emi_ledger.engine import calculate_loan_summary, generate_amortization_schedule
from emi_ledger.exceptions import (
    ConcurrentModificationError,
    InvalidLoanTermsError,
    LoanLedgerError,
    LoanNotFoundError,
    LoanStateError,
)
from emi_ledger.formatter import schedule_to_dicts, summary_to_dict
from emi_ledger.ledger import FINANCIAL_FIELDS, LoanLedger
from emi_ledger.logging import setup_logging
from emi_ledger.store import LoanStore, create_store_from_env

logger = logging.getLogger(__name__)

LOAN_FIELDS = ("lender_name", "loan_type", "household_id", "prepayment_strategy") + FINANCIAL_FIELDS


def to_json(value: Any) -> Any:
    """Recursively convert ledger records into JSON-friendly values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {k: to_json(v) for k, v in asdict(value).items()}
    if isinstance(value, Decimal):
        if value.as_tuple().exponent >= -2:
            return f"{value:.2f}"
        return format(value.normalize(), "f")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.strftime("%Y-%m")
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    return value


def _status_for(exc: LoanLedgerError) -> int:
    if isinstance(exc, LoanNotFoundError):
        return 404
    if isinstance(exc, (LoanStateError, ConcurrentModificationError)):
        return 409
    if isinstance(exc, InvalidLoanTermsError):
        return 400
    return 500


def _payload() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidLoanTermsError("Request body must be a JSON object")
    return data


def create_app(config: Optional[LedgerConfig] = None, store: Optional[LoanStore] = None) -> Flask:
    config = config or LedgerConfig.from_env()
    store = store or create_store_from_env(config.database_url)
    ledger = LoanLedger(store, config)

    app = Flask(__name__)
    app.config["LEDGER"] = ledger

    @app.errorhandler(LoanLedgerError)
    def handle_ledger_error(exc: LoanLedgerError):
        status = _status_for(exc)
        if status >= 500:
            logger.exception("Ledger failure")
        return jsonify({"error": str(exc), "kind": type(exc).__name__}), status

    @app.post("/calculator/summary")
    def calculator_summary():
        data = _payload()
        interest_type = data.get("interest_type", "reducing")
        summary = calculate_loan_summary(
            data.get("principal"),
            data.get("annual_rate", 0),
            tenure_months=data.get("tenure_months"),
            emi=data.get("emi"),
            interest_type=interest_type,
        )
        schedule = generate_amortization_schedule(
            data.get("principal"), data.get("annual_rate", 0), summary.emi, summary.tenure_months, interest_type
        )
        return jsonify({"summary": summary_to_dict(summary), "schedule": schedule_to_dicts(schedule)})

    @app.post("/loans")
    def create_loan():
        data = _payload()
        for required in ("lender_name", "principal", "annual_rate", "start_date"):
            if data.get(required) in (None, ""):
                raise InvalidLoanTermsError(f"Missing field: {required}")
        view = ledger.create_loan(
            data["lender_name"],
            data["principal"],
            data["annual_rate"],
            data["start_date"],
            tenure_months=data.get("tenure_months"),
            emi=data.get("emi"),
            loan_type=data.get("loan_type"),
            interest_type=data.get("interest_type", "reducing"),
            prepayment_strategy=data.get("prepayment_strategy"),
            household_id=data.get("household_id"),
        )
        return jsonify(to_json(view)), 201

    @app.get("/loans")
    def list_loans():
        loans = ledger.list_loans(request.args.get("household_id"))
        return jsonify([to_json(view) for view in loans])

    @app.get("/loans/<int:loan_id>")
    def get_loan(loan_id: int):
        return jsonify(to_json(ledger.get_loan(loan_id)))

    @app.patch("/loans/<int:loan_id>")
    def update_loan(loan_id: int):
        data = _payload()
        unknown = sorted(set(data) - set(LOAN_FIELDS))
        if unknown:
            raise InvalidLoanTermsError(f"Unknown fields: {', '.join(unknown)}")
        view = ledger.update_loan(loan_id, **data)
        return jsonify(to_json(view))

    @app.delete("/loans/<int:loan_id>")
    def delete_loan(loan_id: int):
        ledger.delete_loan(loan_id)
        return "", 204

    @app.get("/loans/<int:loan_id>/schedule")
    def loan_schedule(loan_id: int):
        return jsonify(to_json(ledger.get_schedule(loan_id)))

    @app.post("/loans/<int:loan_id>/payments")
    def record_payment(loan_id: int):
        data = _payload()
        if data.get("amount") in (None, ""):
            raise InvalidLoanTermsError("Missing field: amount")
        receipt = ledger.record_payment(loan_id, data["amount"], data.get("strategy"))
        return jsonify(to_json(receipt)), 201

    @app.get("/loans/<int:loan_id>/closure")
    def quote_closure(loan_id: int):
        fee = request.args.get("fee_percent")
        return jsonify(to_json(ledger.quote_early_closure(loan_id, fee)))

    @app.post("/loans/<int:loan_id>/closure")
    def close_loan(loan_id: int):
        data = request.get_json(silent=True) or {}
        result = ledger.close_early(loan_id, data.get("fee_percent"))
        return jsonify(to_json(result))

    @app.get("/installments")
    def installments():
        start = request.args.get("start")
        end = request.args.get("end")
        if not start or not end:
            raise InvalidLoanTermsError("Both start and end months are required")
        rows = ledger.installments_between(start, end, request.args.get("household_id"))
        return jsonify(to_json(rows))

    return app


if __name__ == "__main__":
    settings = LedgerConfig.from_env()
    setup_logging(settings.log_level, settings.log_format)
    logger.info("Starting EMI ledger service...")
    create_app(settings).run(host="0.0.0.0", port=int(os.environ.get("PORT", "8710")), debug=False)
