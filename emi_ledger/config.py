"""Configuration management for the EMI ledger."""

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from .data_models import PrepaymentStrategy
from .exceptions import ConfigurationError
from .utils import to_decimal

DEFAULT_DATABASE_URL = "sqlite:///emi_ledger.sqlite3"


@dataclass
class LedgerConfig:
    """Runtime settings for the ledger, its CLI and the web service."""

    database_url: str = DEFAULT_DATABASE_URL
    default_prepayment_strategy: PrepaymentStrategy = PrepaymentStrategy.REDUCE_TENURE
    foreclosure_fee_percent: Decimal = Decimal("0")
    log_level: str = "INFO"
    log_format: str = "standard"

    def __post_init__(self) -> None:
        try:
            self.default_prepayment_strategy = PrepaymentStrategy(self.default_prepayment_strategy)
        except ValueError as exc:
            raise ConfigurationError(
                f"Unknown prepayment strategy: {self.default_prepayment_strategy}"
            ) from exc
        try:
            self.foreclosure_fee_percent = to_decimal(self.foreclosure_fee_percent)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if self.foreclosure_fee_percent < 0:
            raise ConfigurationError("Foreclosure fee percent cannot be negative")
        if self.log_format not in ("standard", "json"):
            raise ConfigurationError(f"Unknown log format: {self.log_format}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LedgerConfig":
        """Create config from environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            database_url=env.get("EMI_LEDGER_DATABASE_URL") or DEFAULT_DATABASE_URL,
            default_prepayment_strategy=env.get(
                "EMI_LEDGER_PREPAYMENT_STRATEGY", PrepaymentStrategy.REDUCE_TENURE.value
            ),
            foreclosure_fee_percent=env.get("EMI_LEDGER_FORECLOSURE_FEE_PERCENT", "0"),
            log_level=env.get("EMI_LEDGER_LOG_LEVEL", "INFO"),
            log_format=env.get("EMI_LEDGER_LOG_FORMAT", "standard"),
        )
