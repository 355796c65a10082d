from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from threading import Lock
from typing import Protocol

from sqlalchemy import Date, DateTime, Numeric, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import Invoice


class InvoiceNotFoundError(KeyError):
    """Raised when an operation references an invoice id that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def pending_amount_by_currency(invoices: list[Invoice]) -> dict[str, float]:
    """Total outstanding amount per currency, rounded to cents."""
    totals: dict[str, Decimal] = {}
    for invoice in invoices:
        if invoice.status == "paid":
            continue
        totals[invoice.currency] = totals.get(invoice.currency, Decimal("0")) + Decimal(str(invoice.amount))
    return {currency: float(total.quantize(Decimal("0.01"))) for currency, total in sorted(totals.items())}


class InvoiceRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_invoices(self, invoices: list[Invoice]) -> list[Invoice]: ...

    def list_unpaid_invoices(self) -> list[Invoice]: ...

    def get_invoice(self, invoice_id: str) -> Invoice: ...

    def mark_paid(self, invoice_id: str) -> Invoice: ...


class InMemoryInvoiceRepository:
    """Invoice store kept in process memory, ordered by creation time."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._invoices: dict[str, Invoice] = {}

    def reset(self) -> None:
        with self._lock:
            self._invoices.clear()

    def upsert_invoices(self, invoices: list[Invoice]) -> list[Invoice]:
        stored: list[Invoice] = []
        with self._lock:
            for invoice in invoices:
                existing = self._invoices.get(invoice.invoice_id)
                if existing is not None and existing.status == "paid":
                    # paid is terminal
                    invoice = invoice.model_copy(update={"status": "paid"})
                self._invoices[invoice.invoice_id] = invoice
                stored.append(invoice)
        return stored

    def list_unpaid_invoices(self) -> list[Invoice]:
        with self._lock:
            unpaid = [value for value in self._invoices.values() if value.status == "unpaid"]
        return sorted(unpaid, key=lambda value: (value.created_at, value.invoice_id))

    def get_invoice(self, invoice_id: str) -> Invoice:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def mark_paid(self, invoice_id: str) -> Invoice:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            if invoice.status != "paid":
                invoice = invoice.model_copy(update={"status": "paid"})
                self._invoices[invoice_id] = invoice
            return invoice


class InvoiceStoreBase(DeclarativeBase):
    pass


class _InvoiceRow(InvoiceStoreBase):
    __tablename__ = "invoices"

    invoice_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    student_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    student_name: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_channel: Mapped[str] = mapped_column(String(16), nullable=False)
    contact_target: Mapped[str] = mapped_column(String(256), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="unpaid", index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _row_to_invoice(row: _InvoiceRow) -> Invoice:
    return Invoice(
        invoice_id=row.invoice_id,
        student_id=row.student_id,
        student_name=row.student_name,
        contact_channel=row.contact_channel,  # type: ignore[arg-type]
        contact_target=row.contact_target,
        amount=float(row.amount),
        currency=row.currency,
        created_at=_coerce_utc(row.created_at),
        due_date=row.due_date,
        status=row.status,  # type: ignore[arg-type]
    )


class SqlAlchemyInvoiceRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for INVOICE_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            InvoiceStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_InvoiceRow).delete()

    def upsert_invoices(self, invoices: list[Invoice]) -> list[Invoice]:
        stored: list[Invoice] = []
        with self._session() as session:
            with session.begin():
                for invoice in invoices:
                    now = _now_utc()
                    row = session.get(_InvoiceRow, invoice.invoice_id)
                    if row is None:
                        row = _InvoiceRow(invoice_id=invoice.invoice_id)
                        session.add(row)
                    was_paid = row.status == "paid"
                    row.student_id = invoice.student_id
                    row.student_name = invoice.student_name
                    row.contact_channel = invoice.contact_channel
                    row.contact_target = invoice.contact_target
                    row.amount = Decimal(str(invoice.amount))
                    row.currency = invoice.currency
                    row.created_at = invoice.created_at
                    row.due_date = invoice.due_date
                    if not was_paid:
                        row.status = invoice.status
                        row.paid_at = now if invoice.status == "paid" else None
                    row.updated_at = now
                    stored.append(invoice.model_copy(update={"status": row.status}))
        return stored

    def list_unpaid_invoices(self) -> list[Invoice]:
        with self._session() as session:
            rows = session.execute(
                select(_InvoiceRow)
                .where(_InvoiceRow.status == "unpaid")
                .order_by(_InvoiceRow.created_at.asc(), _InvoiceRow.invoice_id.asc())
            ).scalars()
            return [_row_to_invoice(row) for row in rows]

    def get_invoice(self, invoice_id: str) -> Invoice:
        with self._session() as session:
            row = session.get(_InvoiceRow, invoice_id)
            if row is None:
                raise InvoiceNotFoundError(invoice_id)
            return _row_to_invoice(row)

    def mark_paid(self, invoice_id: str) -> Invoice:
        with self._session() as session:
            with session.begin():
                row = session.get(_InvoiceRow, invoice_id)
                if row is None:
                    raise InvoiceNotFoundError(invoice_id)
                if row.status != "paid":
                    now = _now_utc()
                    row.status = "paid"
                    row.paid_at = now
                    row.updated_at = now
                return _row_to_invoice(row)


def create_invoice_repository(*, backend: str, database_url: str) -> InvoiceRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyInvoiceRepository(database_url)
    if normalized == "inmemory":
        return InMemoryInvoiceRepository()
    raise RuntimeError(f"unsupported INVOICE_STORE_BACKEND: {backend}")
