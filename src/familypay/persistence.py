"""SQLModel backed ledger store."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy import DateTime
from sqlalchemy import update as sql_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, StatementError
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from .config import SQLITE_FILE_NAME
from .exceptions import (
    DuplicatePaymentError,
    PaymentNotFoundError,
    StoreUnavailableError,
    TransactionConflictError,
)
from .ledger import Decide, LedgerStore
from .models import DATETIME_FIELDS, PaymentRecord, PaymentStatus


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
def _timestamp() -> Any:
    # Naive UTC column; newer SQLModel defaults datetime fields to a tz-aware type.
    return Field(default=None, sa_type=DateTime(timezone=False))


class PaymentRow(SQLModel, table=True):
    __tablename__ = "payment"

    payment_id: str = Field(primary_key=True)
    version: int = 0
    status: str = Field(default=PaymentStatus.INITIATED.value, index=True)
    amount_requested_cents: int
    provider: str
    parent_id: str = ""
    student_id: str = ""
    note: str = ""
    created_at: Optional[datetime] = _timestamp()
    updated_at: Optional[datetime] = _timestamp()
    confirmed_at: Optional[datetime] = _timestamp()
    parent_sent_at: Optional[datetime] = _timestamp()
    student_confirmed_at: Optional[datetime] = _timestamp()
    student_received_cents: Optional[int] = None
    cancelled_at: Optional[datetime] = _timestamp()
    cancelled_reason: Optional[str] = None
    disputed_at: Optional[datetime] = _timestamp()
    dispute_reason: Optional[str] = None
    dispute_resolved_at: Optional[datetime] = _timestamp()
    dispute_resolved_by: Optional[str] = None
    failed_at: Optional[datetime] = _timestamp()
    failure_reason: Optional[str] = None
    timed_out_at: Optional[datetime] = _timestamp()
    timeout_reason: Optional[str] = None
    original_status: Optional[str] = None


# SQLite keeps naive datetimes; rows hold UTC without tzinfo.
def _to_storage(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_storage(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_values(record: PaymentRecord) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in PaymentRow.model_fields:
        if name == "version":
            continue
        value = getattr(record, name)
        if isinstance(value, PaymentStatus):
            value = value.value
        elif name in DATETIME_FIELDS:
            value = _to_storage(value)
        values[name] = value
    return values


def _to_record(row: PaymentRow) -> PaymentRecord:
    values = row.model_dump(exclude={"version"})
    for name in DATETIME_FIELDS:
        values[name] = _from_storage(values.get(name))
    return PaymentRecord(**values)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------
def make_engine(path: str = SQLITE_FILE_NAME, *, echo: bool = False) -> Engine:
    return create_engine(
        f"sqlite:///{path}",
        echo=echo,
        connect_args={"check_same_thread": False},
    )


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine, tables=[PaymentRow.__table__])


class SqlLedgerStore(LedgerStore):
    """Ledger store using a ``version`` column for compare-and-set commits."""

    def __init__(self, engine: Engine | None = None) -> None:
        self.engine = engine if engine is not None else make_engine()
        try:
            create_db_and_tables(self.engine)
        except StatementError as exc:
            raise StoreUnavailableError(f"Ledger database error: {exc}") from exc

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def create(self, record: PaymentRecord) -> PaymentRecord:
        try:
            with self._session() as session:
                if session.get(PaymentRow, record.payment_id) is not None:
                    raise DuplicatePaymentError(f"Payment '{record.payment_id}' already exists.")
                session.add(PaymentRow(version=0, **_row_values(record)))
                session.commit()
        except IntegrityError as exc:
            raise DuplicatePaymentError(f"Payment '{record.payment_id}' already exists.") from exc
        except StatementError as exc:
            raise StoreUnavailableError(f"Ledger database error: {exc}") from exc
        return record

    def _load(self, session: Session, payment_id: str) -> PaymentRow:
        row = session.get(PaymentRow, payment_id)
        if row is None:
            raise PaymentNotFoundError(payment_id)
        return row

    def get(self, payment_id: str) -> PaymentRecord:
        try:
            with self._session() as session:
                return _to_record(self._load(session, payment_id))
        except StatementError as exc:
            raise StoreUnavailableError(f"Ledger database error: {exc}") from exc

    def version(self, payment_id: str) -> int:
        try:
            with self._session() as session:
                return self._load(session, payment_id).version
        except StatementError as exc:
            raise StoreUnavailableError(f"Ledger database error: {exc}") from exc

    def list_by_status(self, statuses: Iterable[PaymentStatus]) -> Tuple[PaymentRecord, ...]:
        wanted = sorted({PaymentStatus.parse(status).value for status in statuses})
        query = select(PaymentRow).where(col(PaymentRow.status).in_(wanted)).order_by(PaymentRow.payment_id)
        try:
            with self._session() as session:
                return tuple(_to_record(row) for row in session.exec(query).all())
        except StatementError as exc:
            raise StoreUnavailableError(f"Ledger database error: {exc}") from exc

    def run_transaction(self, payment_id: str, decide: Decide) -> PaymentRecord:
        try:
            with self._session() as session:
                row = self._load(session, payment_id)
                version = row.version
                record = _to_record(row)
                update = decide(record)
                if not update:
                    return record
                updated = record.apply(update)
                values = _row_values(updated)
                values.pop("payment_id")
                statement = (
                    sql_update(PaymentRow)
                    .where(col(PaymentRow.payment_id) == payment_id)
                    .where(col(PaymentRow.version) == version)
                    .values(version=version + 1, **values)
                )
                result = session.connection().execute(statement)
                if result.rowcount != 1:
                    session.rollback()
                    raise TransactionConflictError(
                        f"Payment '{payment_id}' changed while the transaction was running."
                    )
                session.commit()
                return updated
        except StatementError as exc:
            raise StoreUnavailableError(f"Ledger database error: {exc}") from exc


__all__ = [
    "PaymentRow",
    "SqlLedgerStore",
    "create_db_and_tables",
    "make_engine",
]
