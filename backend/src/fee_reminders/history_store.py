"""Append-only reminder history and throttle-window claims.

A reminder event is written once per dispatch attempt and never updated. Before
dispatching, the scheduler claims the invoice's throttle window; a claim is
refused when the invoice already has a claim or an event inside the window, so
two overlapping runs cannot both send. The SQL backend additionally enforces a
unique ``(invoice_id, window_slot)`` constraint, where the slot is the index of
the throttle-sized interval containing the claim time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, create_engine, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import ReminderEvent, ReminderOutcome


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def window_slot(moment: datetime, window: timedelta) -> int:
    return math.floor(_coerce_utc(moment).timestamp() / window.total_seconds())


@dataclass(frozen=True)
class WindowClaim:
    invoice_id: str
    window_slot: int
    claimed_at: datetime
    run_id: str | None


class ReminderHistoryRepository(Protocol):
    def reset(self) -> None: ...

    def latest_event(self, invoice_id: str) -> ReminderEvent | None: ...

    def list_events(self, invoice_id: str | None = None) -> list[ReminderEvent]: ...

    def claim_window(self, invoice_id: str, *, now: datetime, window: timedelta, run_id: str | None) -> bool: ...

    def release_window(self, invoice_id: str, *, now: datetime, window: timedelta, run_id: str | None) -> None: ...

    def append_event(
        self,
        *,
        invoice_id: str,
        channel: str,
        outcome: ReminderOutcome,
        sent_at: datetime,
        run_id: str | None,
        provider_message_id: str | None = None,
        error_code: str | None = None,
    ) -> ReminderEvent: ...


class InMemoryReminderHistoryRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._event_counter = 1
        self._events: list[ReminderEvent] = []
        self._claims: dict[tuple[str, int], WindowClaim] = {}

    def reset(self) -> None:
        with self._lock:
            self._event_counter = 1
            self._events.clear()
            self._claims.clear()

    def latest_event(self, invoice_id: str) -> ReminderEvent | None:
        with self._lock:
            matching = [value for value in self._events if value.invoice_id == invoice_id]
        if not matching:
            return None
        return max(matching, key=lambda value: (value.sent_at, value.event_id))

    def list_events(self, invoice_id: str | None = None) -> list[ReminderEvent]:
        with self._lock:
            matching = [
                value for value in self._events if invoice_id is None or value.invoice_id == invoice_id
            ]
        return sorted(matching, key=lambda value: (value.sent_at, value.event_id), reverse=True)

    def claim_window(self, invoice_id: str, *, now: datetime, window: timedelta, run_id: str | None) -> bool:
        now = _coerce_utc(now)
        cutoff = now - window
        slot = window_slot(now, window)
        with self._lock:
            if (invoice_id, slot) in self._claims:
                return False
            for claim in self._claims.values():
                if claim.invoice_id == invoice_id and claim.claimed_at > cutoff:
                    return False
            for event in self._events:
                if event.invoice_id == invoice_id and event.sent_at > cutoff:
                    return False
            self._claims[(invoice_id, slot)] = WindowClaim(
                invoice_id=invoice_id,
                window_slot=slot,
                claimed_at=now,
                run_id=run_id,
            )
            return True

    def release_window(self, invoice_id: str, *, now: datetime, window: timedelta, run_id: str | None) -> None:
        key = (invoice_id, window_slot(now, window))
        with self._lock:
            claim = self._claims.get(key)
            if claim is not None and claim.run_id == run_id:
                del self._claims[key]

    def append_event(
        self,
        *,
        invoice_id: str,
        channel: str,
        outcome: ReminderOutcome,
        sent_at: datetime,
        run_id: str | None,
        provider_message_id: str | None = None,
        error_code: str | None = None,
    ) -> ReminderEvent:
        with self._lock:
            event = ReminderEvent(
                event_id=self._event_counter,
                invoice_id=invoice_id,
                channel=channel,  # type: ignore[arg-type]
                outcome=outcome,
                sent_at=_coerce_utc(sent_at),
                run_id=run_id,
                provider_message_id=provider_message_id,
                error_code=error_code,
            )
            self._event_counter += 1
            self._events.append(event)
            return event


class ReminderHistoryBase(DeclarativeBase):
    pass


class _ReminderEventRow(ReminderHistoryBase):
    __tablename__ = "reminder_events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)


class _ReminderWindowClaimRow(ReminderHistoryBase):
    __tablename__ = "reminder_window_claims"
    __table_args__ = (UniqueConstraint("invoice_id", "window_slot", name="uq_reminder_window_claims_invoice_slot"),)

    claim_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    window_slot: Mapped[int] = mapped_column(Integer, nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


def _row_to_event(row: _ReminderEventRow) -> ReminderEvent:
    return ReminderEvent(
        event_id=row.event_id,
        invoice_id=row.invoice_id,
        channel=row.channel,  # type: ignore[arg-type]
        outcome=row.outcome,  # type: ignore[arg-type]
        sent_at=_coerce_utc(row.sent_at),
        run_id=row.run_id,
        provider_message_id=row.provider_message_id,
        error_code=row.error_code,
    )


class SqlAlchemyReminderHistoryRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderHistoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ReminderWindowClaimRow).delete()
                session.query(_ReminderEventRow).delete()

    def latest_event(self, invoice_id: str) -> ReminderEvent | None:
        with self._session() as session:
            row = session.execute(
                select(_ReminderEventRow)
                .where(_ReminderEventRow.invoice_id == invoice_id)
                .order_by(_ReminderEventRow.sent_at.desc(), _ReminderEventRow.event_id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return _row_to_event(row)

    def list_events(self, invoice_id: str | None = None) -> list[ReminderEvent]:
        query = select(_ReminderEventRow).order_by(
            _ReminderEventRow.sent_at.desc(), _ReminderEventRow.event_id.desc()
        )
        if invoice_id is not None:
            query = query.where(_ReminderEventRow.invoice_id == invoice_id)
        with self._session() as session:
            return [_row_to_event(row) for row in session.execute(query).scalars()]

    def claim_window(self, invoice_id: str, *, now: datetime, window: timedelta, run_id: str | None) -> bool:
        now = _coerce_utc(now)
        cutoff = now - window
        try:
            with self._session() as session:
                with session.begin():
                    recent_claim = session.execute(
                        select(_ReminderWindowClaimRow.claim_id)
                        .where(_ReminderWindowClaimRow.invoice_id == invoice_id)
                        .where(_ReminderWindowClaimRow.claimed_at > cutoff)
                        .limit(1)
                    ).scalar_one_or_none()
                    if recent_claim is not None:
                        return False
                    recent_event = session.execute(
                        select(_ReminderEventRow.event_id)
                        .where(_ReminderEventRow.invoice_id == invoice_id)
                        .where(_ReminderEventRow.sent_at > cutoff)
                        .limit(1)
                    ).scalar_one_or_none()
                    if recent_event is not None:
                        return False
                    session.add(
                        _ReminderWindowClaimRow(
                            invoice_id=invoice_id,
                            window_slot=window_slot(now, window),
                            claimed_at=now,
                            run_id=run_id,
                        )
                    )
        except IntegrityError:
            return False
        return True

    def release_window(self, invoice_id: str, *, now: datetime, window: timedelta, run_id: str | None) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(
                    delete(_ReminderWindowClaimRow)
                    .where(_ReminderWindowClaimRow.invoice_id == invoice_id)
                    .where(_ReminderWindowClaimRow.window_slot == window_slot(now, window))
                    .where(_ReminderWindowClaimRow.run_id == run_id)
                )

    def append_event(
        self,
        *,
        invoice_id: str,
        channel: str,
        outcome: ReminderOutcome,
        sent_at: datetime,
        run_id: str | None,
        provider_message_id: str | None = None,
        error_code: str | None = None,
    ) -> ReminderEvent:
        with self._session() as session:
            with session.begin():
                row = _ReminderEventRow(
                    invoice_id=invoice_id,
                    channel=channel,
                    outcome=outcome,
                    sent_at=_coerce_utc(sent_at),
                    run_id=run_id,
                    provider_message_id=provider_message_id,
                    error_code=error_code,
                )
                session.add(row)
                session.flush()
                return _row_to_event(row)


def create_history_repository(*, backend: str, database_url: str) -> ReminderHistoryRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderHistoryRepository(database_url)
    if normalized == "inmemory":
        return InMemoryReminderHistoryRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
