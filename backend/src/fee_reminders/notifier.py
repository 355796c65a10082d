"""Reminder delivery to email, SMS and WhatsApp recipients.

Every request carries an idempotency key derived from the invoice and its
throttle window slot, so a gateway that deduplicates on the key delivers at
most one reminder per invoice per window even when a run retries a send.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import Any, Literal, Protocol

from .history_store import window_slot
from .models import ContactChannel, Invoice

logger = logging.getLogger(__name__)

NotificationStatus = Literal["sent", "failed", "dry_run"]

SUPPORTED_CHANNELS = frozenset({"email", "sms", "whatsapp"})
WHATSAPP_TEMPLATE = "fee_payment_reminder"


def reminder_idempotency_key(invoice_id: str, now: datetime, window: timedelta) -> str:
    return f"fee-reminder:{invoice_id}:{window_slot(now, window)}"


@dataclass(frozen=True)
class NotificationRequest:
    invoice_id: str
    student_id: str
    student_name: str
    contact_channel: ContactChannel
    contact_target: str
    currency: str
    amount: float
    due_date: date | None
    idempotency_key: str

    @classmethod
    def from_invoice(cls, invoice: Invoice, *, idempotency_key: str) -> NotificationRequest:
        return cls(
            invoice_id=invoice.invoice_id,
            student_id=invoice.student_id,
            student_name=invoice.student_name,
            contact_channel=invoice.contact_channel,
            contact_target=invoice.contact_target,
            currency=invoice.currency,
            amount=invoice.amount,
            due_date=invoice.due_date,
            idempotency_key=idempotency_key,
        )

    @property
    def amount_label(self) -> str:
        return f"{self.currency} {self.amount:,.2f}"


@dataclass(frozen=True)
class NotificationResult:
    status: NotificationStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class NotifierSender(Protocol):
    def send_payment_reminder(self, payload: NotificationRequest, *, dry_run: bool) -> NotificationResult: ...


def parse_channels(channel: str) -> frozenset[str]:
    parsed = {item.strip().lower() for item in channel.split(",") if item.strip()}
    return frozenset(parsed & SUPPORTED_CHANNELS) or frozenset({"email", "sms"})


def render_email(payload: NotificationRequest) -> tuple[str, str]:
    subject = f"Fee reminder: {payload.amount_label} outstanding for {payload.student_name}"
    lines = [
        f"Dear parent or guardian of {payload.student_name},",
        "",
        f"Our records show that invoice {payload.invoice_id} for {payload.amount_label} is still unpaid.",
    ]
    if payload.due_date is not None:
        lines.append(f"The payment was due on {payload.due_date.isoformat()}.")
    lines += ["", "If you have already paid, please ignore this message.", "", "Accounts Office"]
    return subject, "\n".join(lines)


def render_text(payload: NotificationRequest) -> str:
    text = f"Fee reminder: {payload.amount_label} for {payload.student_name} is unpaid (invoice {payload.invoice_id})."
    if payload.due_date is not None:
        text += f" Due {payload.due_date.isoformat()}."
    return text


def normalize_phone(contact_target: str) -> str:
    digits = "".join(ch for ch in contact_target if ch.isdigit())
    return f"+{digits}" if contact_target.strip().startswith("+") else digits


def build_gateway_message(payload: NotificationRequest) -> dict[str, Any]:
    """Shape the gateway body for the invoice's channel."""
    if payload.contact_channel == "email":
        subject, body = render_email(payload)
        return {"channel": "email", "to": payload.contact_target.strip(), "subject": subject, "text": body}
    if payload.contact_channel == "whatsapp":
        return {
            "channel": "whatsapp",
            "to": normalize_phone(payload.contact_target),
            "template": WHATSAPP_TEMPLATE,
            "parameters": [
                payload.student_name,
                payload.amount_label,
                payload.invoice_id,
                payload.due_date.isoformat() if payload.due_date is not None else "",
            ],
        }
    return {"channel": "sms", "to": normalize_phone(payload.contact_target), "text": render_text(payload)}


def _failed(attempted_at: datetime, error_code: str, error_message: str) -> NotificationResult:
    return NotificationResult(
        status="failed",
        attempted_at=attempted_at,
        error_code=error_code,
        error_message=error_message,
    )


class StubNotifierSender:
    """In-process sender that records deliveries and honours idempotency keys.

    A contact target containing ``fail`` simulates a provider rejection.
    """

    def __init__(self, *, enabled: bool, channel: str = "email,sms,whatsapp") -> None:
        self._enabled = enabled
        self._channels = parse_channels(channel)
        self._lock = Lock()
        self._deliveries: dict[str, dict[str, Any]] = {}

    @property
    def deliveries(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._deliveries.values())

    def send_payment_reminder(self, payload: NotificationRequest, *, dry_run: bool) -> NotificationResult:
        attempted_at = datetime.now(timezone.utc)
        if dry_run:
            return NotificationResult(status="dry_run", attempted_at=attempted_at)
        if not self._enabled:
            return _failed(attempted_at, "notifier_disabled", "Live reminder delivery is disabled")
        if payload.contact_channel not in self._channels:
            return _failed(
                attempted_at,
                "channel_mismatch",
                f"{payload.contact_channel} is not one of {', '.join(sorted(self._channels))}",
            )
        if "fail" in payload.contact_target.lower():
            return _failed(attempted_at, "stub_delivery_failed", "Stub sender rejected the contact target")

        with self._lock:
            # a repeated key returns the original delivery, like the gateway does
            self._deliveries.setdefault(payload.idempotency_key, build_gateway_message(payload))
        return NotificationResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-{payload.idempotency_key}",
        )


class HttpNotifierSender:
    """Posts reminders to the messaging gateway.

    The request idempotency key travels in the ``Idempotency-Key`` header;
    transport failures map to ``http_<status>``, ``timeout`` or
    ``connection_error``.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        channels: frozenset[str] | set[str],
        timeout_seconds: int = 30,
    ) -> None:
        if not base_url.strip():
            raise ValueError("base_url must not be empty")
        if not api_key.strip():
            raise ValueError("api_key must not be empty")
        self._endpoint = f"{base_url.strip().rstrip('/')}/v1/messages/send"
        self._api_key = api_key.strip()
        self._channels = frozenset(channels)
        self._timeout_seconds = timeout_seconds

    def send_payment_reminder(self, payload: NotificationRequest, *, dry_run: bool) -> NotificationResult:
        attempted_at = datetime.now(timezone.utc)
        if dry_run:
            return NotificationResult(status="dry_run", attempted_at=attempted_at)
        if payload.contact_channel not in self._channels:
            return _failed(
                attempted_at,
                "channel_not_configured",
                f"Channel '{payload.contact_channel}' is not configured; "
                f"available channels: {', '.join(sorted(self._channels))}",
            )

        request = urllib.request.Request(
            self._endpoint,
            data=json.dumps(build_gateway_message(payload)).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "Idempotency-Key": payload.idempotency_key,
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                body = json.loads(response.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as exc:
            error_code, detail = f"http_{exc.code}", f"HTTP {exc.code}: {exc.reason}"
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                error_code, detail = "timeout", f"Request timed out: {exc.reason}"
            else:
                error_code, detail = "connection_error", f"Connection error: {exc.reason}"
        except (socket.timeout, TimeoutError) as exc:
            error_code, detail = "timeout", f"Request timed out: {exc}"
        else:
            return NotificationResult(
                status="sent",
                attempted_at=attempted_at,
                provider_message_id=body.get("message_id"),
            )

        masked = mask_contact_target(payload.contact_target, payload.contact_channel)
        logger.warning("gateway rejected reminder for invoice %s (%s): %s", payload.invoice_id, masked, detail)
        return _failed(attempted_at, error_code, f"{detail} (recipient: {masked})")


def create_notifier(
    *,
    sender_type: str,
    enabled: bool,
    channel: str,
    base_url: str = "",
    api_key: str = "",
    timeout_seconds: int = 30,
) -> NotifierSender:
    if sender_type.strip().lower() == "http":
        return HttpNotifierSender(
            base_url=base_url,
            api_key=api_key,
            channels=parse_channels(channel),
            timeout_seconds=timeout_seconds,
        )
    return StubNotifierSender(enabled=enabled, channel=channel)


def _mask_email(value: str) -> str | None:
    local, at, domain = value.partition("@")
    if not at:
        return None
    return f"{local[:1]}***@{domain}" if len(local) > 1 else f"*@{domain}"


def _mask_phone(value: str) -> str | None:
    digits = "".join(ch for ch in value if ch.isdigit())
    return f"***{digits[-4:]}" if len(digits) >= 4 else None


_MASKERS = {"email": _mask_email, "sms": _mask_phone, "whatsapp": _mask_phone}


def mask_contact_target(contact_target: str, channel: str) -> str:
    value = contact_target.strip()
    if not value:
        return "***"
    masker = _MASKERS.get(channel)
    masked = masker(value) if masker is not None else None
    if masked is not None:
        return masked
    return "*" * len(value) if len(value) <= 4 else f"{value[:2]}***{value[-2:]}"
