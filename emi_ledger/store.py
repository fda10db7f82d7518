"""Persistence layer for loans and their installments.

This module keeps the ledger's rows in any SQLAlchemy-compatible database.
It defaults to SQLite for local development, but accepts any SQLAlchemy URL
(e.g. PostgreSQL/MySQL) for shared deployments.

Money is stored as integer minor units (paise/cents) and rates as integer
ten-thousandths of a percent, so values survive a round trip through any
backend without binary floating point. The loan row carries a ``revision``
column used by SQLAlchemy as a version counter: an UPDATE that finds a
different revision than the one it read fails instead of overwriting a
concurrent writer's changes.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .config import DEFAULT_DATABASE_URL
from .exceptions import ConcurrentModificationError, LoanNotFoundError
from .utils import to_decimal

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every backend stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ScaledDecimal(TypeDecorator):
    """A ``Decimal`` persisted as an integer count of ``10**-places`` units."""

    impl = BigInteger
    cache_ok = True

    def __init__(self, places: int = 2) -> None:
        super().__init__()
        self.places = places

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        scaled = to_decimal(value).scaleb(self.places)
        return int(scaled.to_integral_value(rounding=ROUND_HALF_UP))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-self.places)


def Money() -> ScaledDecimal:
    return ScaledDecimal(2)


def Rate() -> ScaledDecimal:
    return ScaledDecimal(4)


class LoanModel(Base):
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    household_id = Column(String(64), index=True, nullable=True)
    lender_name = Column(String(255), nullable=False)
    loan_type = Column(String(100), nullable=True)
    principal_amount = Column(Money(), nullable=False)
    interest_rate = Column(Rate(), nullable=False)
    tenure_months = Column(Integer, nullable=False)
    emi_amount = Column(Money(), nullable=False)
    start_date = Column(Date, nullable=False)
    total_interest = Column(Money(), nullable=False)
    total_payable = Column(Money(), nullable=False)
    outstanding_principal = Column(Money(), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    interest_type = Column(String(20), nullable=False, default="reducing")
    prepayment_strategy = Column(String(20), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    revision = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": revision}


class InstallmentModel(Base):
    __tablename__ = "loan_installments"
    __table_args__ = (UniqueConstraint("loan_id", "period", name="uq_installment_period"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), index=True, nullable=False)
    period = Column(Integer, nullable=False)
    installment_month = Column(Date, index=True, nullable=False)
    emi_amount = Column(Money(), nullable=False)
    principal_component = Column(Money(), nullable=False)
    interest_component = Column(Money(), nullable=False)
    outstanding_principal = Column(Money(), nullable=False)
    paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(DateTime, nullable=True)


class LoanRepository:
    """Loan and installment queries bound to one open transaction."""

    def __init__(self, session) -> None:
        self.session = session

    def add_loan(self, **fields: Any) -> LoanModel:
        loan = LoanModel(**fields)
        self.session.add(loan)
        self.session.flush()
        return loan

    def get_loan(self, loan_id: int, *, for_update: bool = False) -> LoanModel:
        stmt = select(LoanModel).where(LoanModel.id == loan_id)
        if for_update:
            stmt = stmt.with_for_update()
        loan = self.session.execute(stmt).scalars().first()
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans(self, household_id: Optional[str] = None) -> List[LoanModel]:
        stmt = select(LoanModel)
        if household_id is not None:
            stmt = stmt.where(LoanModel.household_id == household_id)
        stmt = stmt.order_by(LoanModel.created_at.desc(), LoanModel.id.desc())
        return list(self.session.execute(stmt).scalars())

    def update_loan_totals(self, loan_id: int, fields: Dict[str, Any]) -> LoanModel:
        loan = self.get_loan(loan_id)
        for name, value in fields.items():
            if not hasattr(LoanModel, name):
                raise AttributeError(f"Loan has no field {name}")
            setattr(loan, name, value)
        loan.updated_at = utcnow()
        self.session.flush()
        return loan

    def delete_loan(self, loan_id: int) -> None:
        loan = self.get_loan(loan_id)
        self.delete_installments(loan_id)
        self.session.delete(loan)
        self.session.flush()

    def add_installments(self, rows: Iterable[InstallmentModel]) -> List[InstallmentModel]:
        rows = list(rows)
        self.session.add_all(rows)
        self.session.flush()
        return rows

    def list_installments(self, loan_id: int) -> List[InstallmentModel]:
        stmt = (
            select(InstallmentModel)
            .where(InstallmentModel.loan_id == loan_id)
            .order_by(InstallmentModel.period.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def list_unpaid_installments(self, loan_id: int) -> List[InstallmentModel]:
        stmt = (
            select(InstallmentModel)
            .where(InstallmentModel.loan_id == loan_id, InstallmentModel.paid.is_(False))
            .order_by(InstallmentModel.period.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def count_paid_installments(self, loan_id: int) -> int:
        stmt = select(func.count(InstallmentModel.id)).where(
            InstallmentModel.loan_id == loan_id, InstallmentModel.paid.is_(True)
        )
        return int(self.session.execute(stmt).scalar_one())

    def delete_installments(self, loan_id: int, *, unpaid_only: bool = False) -> None:
        stmt = delete(InstallmentModel).where(InstallmentModel.loan_id == loan_id)
        if unpaid_only:
            stmt = stmt.where(InstallmentModel.paid.is_(False))
        self.session.execute(stmt, execution_options={"synchronize_session": "fetch"})

    def replace_future_installments(
        self, loan_id: int, from_period: int, rows: Sequence[InstallmentModel]
    ) -> List[InstallmentModel]:
        """Swap every unpaid installment from ``from_period`` on for ``rows``."""
        self.session.execute(
            delete(InstallmentModel).where(
                InstallmentModel.loan_id == loan_id,
                InstallmentModel.period >= from_period,
                InstallmentModel.paid.is_(False),
            ),
            execution_options={"synchronize_session": "fetch"},
        )
        return self.add_installments(rows)

    def installments_between(
        self, start: date, end: date, household_id: Optional[str] = None
    ) -> List[InstallmentModel]:
        stmt = (
            select(InstallmentModel)
            .join(LoanModel, LoanModel.id == InstallmentModel.loan_id)
            .where(
                InstallmentModel.installment_month >= start,
                InstallmentModel.installment_month <= end,
            )
        )
        if household_id is not None:
            stmt = stmt.where(LoanModel.household_id == household_id)
        stmt = stmt.order_by(InstallmentModel.installment_month.asc(), InstallmentModel.loan_id.asc())
        return list(self.session.execute(stmt).scalars())


class LoanStore:
    """Database-backed loan store handing out one transaction at a time."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        engine_kwargs: Dict[str, Any] = {"future": True, "echo": echo}
        self._shared_connection = _is_memory_sqlite(url)
        if self._shared_connection:
            # one connection shared by every thread; transactions take turns
            engine_kwargs.update(
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        self._engine = create_engine(url, **engine_kwargs)
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        self._serial = threading.RLock() if self._shared_connection else None
        self.url = url

    @contextmanager
    def transaction(self) -> Iterator[LoanRepository]:
        """Open a transaction; commit on success, roll back on any error."""
        if self._serial is not None:
            self._serial.acquire()
        session = self._session_factory()
        try:
            yield LoanRepository(session)
            session.commit()
        except StaleDataError as exc:
            session.rollback()
            logger.warning("Loan changed by another writer: %s", exc)
            raise ConcurrentModificationError("Loan was modified concurrently; reload and retry") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()
            if self._serial is not None:
                self._serial.release()

    def dispose(self) -> None:
        self._engine.dispose()


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith(":memory:") or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"))


def create_store_from_env(url: Optional[str]) -> LoanStore:
    return LoanStore(url or DEFAULT_DATABASE_URL)
