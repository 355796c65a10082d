from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

InvoiceStatus = Literal["unpaid", "paid"]
ContactChannel = Literal["email", "sms", "whatsapp"]
ReminderOutcome = Literal["sent", "failed"]
EligibilityReason = Literal["paid", "too_new", "first_reminder", "throttle_elapsed", "throttled"]
ReminderResultStatus = Literal["sent", "failed", "skipped", "error", "dry_run"]
RunStatus = Literal["running", "completed", "failed"]


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Invoice(BaseModel):
    invoice_id: str = Field(min_length=1, max_length=128)
    student_id: str = Field(min_length=1, max_length=128)
    student_name: str = Field(min_length=1, max_length=256)
    contact_channel: ContactChannel = "email"
    contact_target: str = Field(min_length=1, max_length=256)
    amount: float = Field(ge=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    created_at: datetime
    due_date: date | None = None
    status: InvoiceStatus = "unpaid"

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return _to_utc(value)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("amount")
    @classmethod
    def _round_amount(cls, value: float) -> float:
        return round(float(value), 2)


class ReminderEvent(BaseModel):
    event_id: int
    invoice_id: str
    channel: ContactChannel
    outcome: ReminderOutcome
    sent_at: datetime
    run_id: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None


class EligibilityDecision(BaseModel):
    invoice_id: str
    eligible: bool
    reason: EligibilityReason
    next_eligible_at: datetime | None = None


class ReminderResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    invoice_id: str
    status: ReminderResultStatus
    reason: str
    eligible: bool = False
    attempted_at: datetime | None = None
    event_id: int | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    next_eligible_at: datetime | None = None
    contact_target_masked: str | None = None


class RunSummary(BaseModel):
    """Outcome of one scheduler run, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    run_id: str | None = None
    run_at: datetime
    dry_run: bool = False
    total_unpaid: int
    eligible: int
    sent: int
    failed: int
    errors: int = 0
    skipped: int = 0
    results: list[ReminderResult] = Field(default_factory=list)


class ReminderRunRequest(BaseModel):
    dry_run: bool = False
    now_override: datetime | None = None
    idempotency_key: str | None = Field(default=None, min_length=8, max_length=128)

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _to_utc(value)


class ReminderEvaluateRequest(BaseModel):
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _to_utc(value)


class ReminderHistoryResponse(BaseModel):
    invoice_id: str
    events: list[ReminderEvent]


class ReminderOverviewResponse(BaseModel):
    unpaid_count: int
    eligible_now_count: int
    pending_amount: dict[str, float] = Field(default_factory=dict)
    last_run_id: str | None = None
    last_run_at: datetime | None = None
    last_run_status: RunStatus | None = None
    last_run_sent_count: int | None = None
    last_run_failed_count: int | None = None
    last_run_error_count: int | None = None


class ReminderRunDetail(BaseModel):
    run_id: str
    run_at: datetime
    dry_run: bool
    triggered_by: str
    status: RunStatus
    total_unpaid: int
    eligible: int
    sent: int
    failed: int
    errors: int
    skipped: int
    created_at: datetime
    finished_at: datetime | None = None
    error_message: str | None = None


class InvoicePaidResponse(BaseModel):
    invoice_id: str
    status: InvoiceStatus
