"""Pure reminder eligibility rules.

Rules are evaluated in order and the first match wins:

1. the invoice is already paid -> ``paid``
2. the invoice is younger than the minimum age -> ``too_new``
3. no reminder was ever recorded -> ``first_reminder``
4. the last reminder is at least one throttle interval old -> ``throttle_elapsed``,
   otherwise ``throttled``

Durations are compared as exact ``timedelta`` values, so fractional days count.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .config import Settings
from .models import EligibilityDecision, Invoice, ReminderEvent

DEFAULT_MIN_AGE = timedelta(days=15)
DEFAULT_THROTTLE = timedelta(days=2)


@dataclass(frozen=True)
class ReminderPolicy:
    min_age: timedelta = DEFAULT_MIN_AGE
    throttle: timedelta = DEFAULT_THROTTLE

    @classmethod
    def from_settings(cls, settings: Settings) -> ReminderPolicy:
        return cls(
            min_age=timedelta(days=settings.reminder_min_age_days),
            throttle=timedelta(days=settings.reminder_throttle_days),
        )


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def evaluate(
    invoice: Invoice,
    last_event: ReminderEvent | None,
    now: datetime,
    *,
    policy: ReminderPolicy = ReminderPolicy(),
) -> EligibilityDecision:
    now = _coerce_utc(now)

    if invoice.status == "paid":
        return EligibilityDecision(invoice_id=invoice.invoice_id, eligible=False, reason="paid")

    old_enough_at = _coerce_utc(invoice.created_at) + policy.min_age
    if now < old_enough_at:
        return EligibilityDecision(
            invoice_id=invoice.invoice_id,
            eligible=False,
            reason="too_new",
            next_eligible_at=old_enough_at,
        )

    if last_event is None:
        return EligibilityDecision(invoice_id=invoice.invoice_id, eligible=True, reason="first_reminder")

    next_allowed = _coerce_utc(last_event.sent_at) + policy.throttle
    if now >= next_allowed:
        return EligibilityDecision(invoice_id=invoice.invoice_id, eligible=True, reason="throttle_elapsed")
    return EligibilityDecision(
        invoice_id=invoice.invoice_id,
        eligible=False,
        reason="throttled",
        next_eligible_at=next_allowed,
    )
