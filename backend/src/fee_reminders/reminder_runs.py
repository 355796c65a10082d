from __future__ import annotations

import hashlib
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import ReminderRunRequest, RunSummary
from .scheduler import ReminderRunError, ReminderScheduler

logger = logging.getLogger(__name__)


class RunNotFoundError(KeyError):
    """Raised when an operation references a run id that does not exist."""


class IdempotencyConflictError(ValueError):
    """Raised when an idempotency key is reused with a different request payload."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _payload_hash(payload: dict[str, object]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def _stable_summary_json(summary: RunSummary) -> str:
    return json.dumps(summary.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class ReminderIdempotencyRecord:
    idempotency_key: str
    request_hash: str
    response_payload: str
    run_id: str
    created_at: datetime


@dataclass(frozen=True)
class ReminderRunRecord:
    run_id: str
    run_at: datetime
    dry_run: bool
    triggered_by: str
    status: str
    total_unpaid: int
    eligible: int
    sent: int
    failed: int
    errors: int
    skipped: int
    created_at: datetime
    finished_at: datetime | None
    error_message: str | None


class ReminderRunRepository(Protocol):
    def reset(self) -> None: ...

    def get_idempotency(self, idempotency_key: str) -> ReminderIdempotencyRecord | None: ...

    def save_idempotency(
        self,
        *,
        idempotency_key: str,
        request_hash: str,
        response_payload: str,
        run_id: str,
    ) -> None: ...

    def start_run(self, *, run_at: datetime, dry_run: bool, triggered_by: str) -> str: ...

    def complete_run(self, run_id: str, *, summary: RunSummary, finished_at: datetime) -> None: ...

    def fail_run(self, run_id: str, *, error_message: str, finished_at: datetime) -> None: ...

    def get_run(self, run_id: str) -> ReminderRunRecord | None: ...

    def get_latest_run(self) -> ReminderRunRecord | None: ...


class InMemoryReminderRunRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._run_counter = 1
        self._runs: dict[str, ReminderRunRecord] = {}
        self._idempotency: dict[str, ReminderIdempotencyRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._run_counter = 1
            self._runs.clear()
            self._idempotency.clear()

    def get_idempotency(self, idempotency_key: str) -> ReminderIdempotencyRecord | None:
        with self._lock:
            return self._idempotency.get(idempotency_key)

    def save_idempotency(
        self,
        *,
        idempotency_key: str,
        request_hash: str,
        response_payload: str,
        run_id: str,
    ) -> None:
        with self._lock:
            self._idempotency[idempotency_key] = ReminderIdempotencyRecord(
                idempotency_key=idempotency_key,
                request_hash=request_hash,
                response_payload=response_payload,
                run_id=run_id,
                created_at=_now_utc(),
            )

    def start_run(self, *, run_at: datetime, dry_run: bool, triggered_by: str) -> str:
        with self._lock:
            run_id = f"rrun_{self._run_counter:06d}"
            self._run_counter += 1
            self._runs[run_id] = ReminderRunRecord(
                run_id=run_id,
                run_at=run_at,
                dry_run=dry_run,
                triggered_by=triggered_by,
                status="running",
                total_unpaid=0,
                eligible=0,
                sent=0,
                failed=0,
                errors=0,
                skipped=0,
                created_at=_now_utc(),
                finished_at=None,
                error_message=None,
            )
            return run_id

    def complete_run(self, run_id: str, *, summary: RunSummary, finished_at: datetime) -> None:
        with self._lock:
            row = self._runs[run_id]
            self._runs[run_id] = ReminderRunRecord(
                **{
                    **row.__dict__,
                    "status": "completed",
                    "total_unpaid": summary.total_unpaid,
                    "eligible": summary.eligible,
                    "sent": summary.sent,
                    "failed": summary.failed,
                    "errors": summary.errors,
                    "skipped": summary.skipped,
                    "finished_at": finished_at,
                }
            )

    def fail_run(self, run_id: str, *, error_message: str, finished_at: datetime) -> None:
        with self._lock:
            row = self._runs[run_id]
            self._runs[run_id] = ReminderRunRecord(
                **{**row.__dict__, "status": "failed", "error_message": error_message, "finished_at": finished_at}
            )

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def get_latest_run(self) -> ReminderRunRecord | None:
        with self._lock:
            if not self._runs:
                return None
            return max(self._runs.values(), key=lambda value: (value.created_at, value.run_id))


class ReminderRunsBase(DeclarativeBase):
    pass


class _ReminderRunRow(ReminderRunsBase):
    __tablename__ = "reminder_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    triggered_by: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    total_unpaid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    eligible: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class _ReminderIdempotencyRow(ReminderRunsBase):
    __tablename__ = "reminder_idempotency_keys"

    idempotency_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    run_id: Mapped[str] = mapped_column(String(64), ForeignKey("reminder_runs.run_id"), nullable=False)
    response_payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _row_to_run(row: _ReminderRunRow) -> ReminderRunRecord:
    return ReminderRunRecord(
        run_id=row.run_id,
        run_at=_coerce_utc(row.run_at),
        dry_run=row.dry_run,
        triggered_by=row.triggered_by,
        status=row.status,
        total_unpaid=row.total_unpaid,
        eligible=row.eligible,
        sent=row.sent,
        failed=row.failed,
        errors=row.errors,
        skipped=row.skipped,
        created_at=_coerce_utc(row.created_at),
        finished_at=_coerce_utc(row.finished_at) if row.finished_at is not None else None,
        error_message=row.error_message,
    )


class SqlAlchemyReminderRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ReminderIdempotencyRow).delete()
                session.query(_ReminderRunRow).delete()

    def get_idempotency(self, idempotency_key: str) -> ReminderIdempotencyRecord | None:
        with self._session() as session:
            row = session.get(_ReminderIdempotencyRow, idempotency_key)
            if row is None:
                return None
            return ReminderIdempotencyRecord(
                idempotency_key=row.idempotency_key,
                request_hash=row.request_hash,
                response_payload=row.response_payload_json,
                run_id=row.run_id,
                created_at=_coerce_utc(row.created_at),
            )

    def save_idempotency(
        self,
        *,
        idempotency_key: str,
        request_hash: str,
        response_payload: str,
        run_id: str,
    ) -> None:
        with self._session() as session:
            with session.begin():
                existing = session.get(_ReminderIdempotencyRow, idempotency_key)
                if existing is None:
                    session.add(
                        _ReminderIdempotencyRow(
                            idempotency_key=idempotency_key,
                            request_hash=request_hash,
                            run_id=run_id,
                            response_payload_json=response_payload,
                            created_at=_now_utc(),
                        )
                    )
                else:
                    existing.request_hash = request_hash
                    existing.run_id = run_id
                    existing.response_payload_json = response_payload

    def start_run(self, *, run_at: datetime, dry_run: bool, triggered_by: str) -> str:
        run_id = f"rrun_{secrets.token_hex(8)}"
        with self._session() as session:
            with session.begin():
                session.add(
                    _ReminderRunRow(
                        run_id=run_id,
                        run_at=run_at,
                        dry_run=dry_run,
                        triggered_by=triggered_by,
                        status="running",
                        total_unpaid=0,
                        eligible=0,
                        sent=0,
                        failed=0,
                        errors=0,
                        skipped=0,
                        created_at=_now_utc(),
                    )
                )
        return run_id

    def complete_run(self, run_id: str, *, summary: RunSummary, finished_at: datetime) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRunRow, run_id)
                if row is None:
                    raise RunNotFoundError(run_id)
                row.status = "completed"
                row.total_unpaid = summary.total_unpaid
                row.eligible = summary.eligible
                row.sent = summary.sent
                row.failed = summary.failed
                row.errors = summary.errors
                row.skipped = summary.skipped
                row.finished_at = finished_at

    def fail_run(self, run_id: str, *, error_message: str, finished_at: datetime) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRunRow, run_id)
                if row is None:
                    raise RunNotFoundError(run_id)
                row.status = "failed"
                row.error_message = error_message
                row.finished_at = finished_at

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        with self._session() as session:
            row = session.get(_ReminderRunRow, run_id)
            if row is None:
                return None
            return _row_to_run(row)

    def get_latest_run(self) -> ReminderRunRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_ReminderRunRow)
                .order_by(_ReminderRunRow.created_at.desc(), _ReminderRunRow.run_id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return _row_to_run(row)


def create_reminder_run_repository(*, backend: str, database_url: str) -> ReminderRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRunRepository(database_url)
    if normalized == "inmemory":
        return InMemoryReminderRunRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")


class ReminderWorkflowService:
    """Wraps scheduler runs with the run log and request idempotency keys."""

    def __init__(self, *, repository: ReminderRunRepository, scheduler: ReminderScheduler) -> None:
        self._repository = repository
        self._scheduler = scheduler

    def run_once(self, payload: ReminderRunRequest, *, triggered_by: str) -> RunSummary:
        request_payload = payload.model_dump(mode="json")
        request_hash = _payload_hash(request_payload)

        if payload.idempotency_key:
            existing = self._repository.get_idempotency(payload.idempotency_key)
            if existing is not None:
                if existing.request_hash != request_hash:
                    raise IdempotencyConflictError("idempotency_key already used with a different request payload")
                return RunSummary.model_validate_json(existing.response_payload)

        if payload.dry_run:
            # evaluation only: nothing is dispatched, recorded or logged as a run
            return self._scheduler.run_once(payload.now_override, dry_run=True)

        run_at = payload.now_override or _now_utc()
        run_id = self._repository.start_run(run_at=run_at, dry_run=False, triggered_by=triggered_by)
        logger.info("reminder run %s started by %s", run_id, triggered_by)
        try:
            summary = self._scheduler.run_once(run_at, run_id=run_id)
        except ReminderRunError as exc:
            self._repository.fail_run(run_id, error_message=str(exc), finished_at=_now_utc())
            raise
        self._repository.complete_run(run_id, summary=summary, finished_at=_now_utc())

        if payload.idempotency_key:
            self._repository.save_idempotency(
                idempotency_key=payload.idempotency_key,
                request_hash=request_hash,
                response_payload=_stable_summary_json(summary),
                run_id=run_id,
            )
        return summary

    def evaluate(self, now: datetime | None = None) -> RunSummary:
        return self._scheduler.run_once(now, dry_run=True)

    def get_run(self, run_id: str) -> ReminderRunRecord:
        record = self._repository.get_run(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record

    def get_latest_run(self) -> ReminderRunRecord | None:
        return self._repository.get_latest_run()
