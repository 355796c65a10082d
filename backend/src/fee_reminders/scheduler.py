from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta, timezone

from .billing_store import InvoiceNotFoundError, InvoiceRepository
from .eligibility import ReminderPolicy, evaluate
from .history_store import ReminderHistoryRepository
from .models import Invoice, ReminderResult, RunSummary
from .notifier import (
    NotificationRequest,
    NotificationResult,
    NotifierSender,
    mask_contact_target,
    reminder_idempotency_key,
)

logger = logging.getLogger(__name__)

FAILED_ATTEMPT_POLICIES = {"consume_window", "retry_next_run"}
# The message went out (or was attempted) but could not be written to history.
HISTORY_APPEND_FAILED = "history_append_failed"
# The provider may or may not have delivered; the window stays consumed.
DISPATCH_TIMEOUT = "timeout"
# The send was cancelled before it reached the provider.
DISPATCH_NOT_STARTED = "dispatch_not_started"


class ReminderRunError(RuntimeError):
    """Raised when a reminder run cannot proceed at all."""


class InvoiceFetchError(ReminderRunError):
    """Raised when the unpaid invoice set cannot be fetched."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderScheduler:
    """Runs one reminder pass over every unpaid invoice.

    Each invoice is handled by exactly one worker, which reads its latest
    reminder event, evaluates eligibility and, when eligible, claims the
    throttle window, dispatches and appends the resulting event.

    ``failed_attempt_policy`` decides what a failed dispatch leaves behind:

    - ``consume_window``: a ``failed`` event is appended and the claim kept, so
      the invoice is retried once the throttle interval has elapsed.
    - ``retry_next_run``: nothing is appended and the claim is released, so the
      next run retries immediately.

    A dispatch that timed out after reaching the provider always consumes the
    window, since the message may have gone out. A dispatch cancelled before it
    started never does. With ``dispatch_timeout_seconds`` set, each send runs on
    its own thread so the timeout covers the send alone.
    """

    def __init__(
        self,
        *,
        invoices: InvoiceRepository,
        history: ReminderHistoryRepository,
        sender: NotifierSender,
        policy: ReminderPolicy | None = None,
        max_workers: int = 4,
        failed_attempt_policy: str = "consume_window",
        dispatch_timeout_seconds: float | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if failed_attempt_policy not in FAILED_ATTEMPT_POLICIES:
            raise ValueError(f"unsupported failed attempt policy: {failed_attempt_policy}")
        policy = policy or ReminderPolicy()
        if policy.throttle <= timedelta(0):
            raise ValueError("throttle interval must be positive")
        self._invoices = invoices
        self._history = history
        self._sender = sender
        self._policy = policy
        self._max_workers = max_workers
        self._failed_attempt_policy = failed_attempt_policy
        self._dispatch_timeout_seconds = dispatch_timeout_seconds

    @property
    def policy(self) -> ReminderPolicy:
        return self._policy

    def run_once(
        self,
        now: datetime | None = None,
        *,
        dry_run: bool = False,
        run_id: str | None = None,
    ) -> RunSummary:
        run_at = _coerce_utc(now) if now is not None else _now_utc()
        try:
            invoices = self._invoices.list_unpaid_invoices()
        except Exception as exc:
            logger.exception("reminder run %s aborted: unpaid invoice fetch failed", run_id or "-")
            raise InvoiceFetchError("failed to fetch unpaid invoices") from exc

        results: list[ReminderResult] = []
        if invoices:
            workers = min(self._max_workers, len(invoices))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(
                    executor.map(
                        lambda invoice: self._process_invoice(invoice, now=run_at, dry_run=dry_run, run_id=run_id),
                        invoices,
                    )
                )

        summary = RunSummary(
            run_id=run_id,
            run_at=run_at,
            dry_run=dry_run,
            total_unpaid=len(invoices),
            eligible=sum(1 for value in results if value.eligible),
            sent=sum(1 for value in results if value.status == "sent"),
            failed=sum(1 for value in results if value.status == "failed"),
            errors=sum(
                1 for value in results if value.status == "error" or value.error_code == HISTORY_APPEND_FAILED
            ),
            skipped=sum(1 for value in results if value.status == "skipped"),
            results=results,
        )
        logger.info(
            "reminder run %s finished: total_unpaid=%d eligible=%d sent=%d failed=%d errors=%d dry_run=%s",
            run_id or "-",
            summary.total_unpaid,
            summary.eligible,
            summary.sent,
            summary.failed,
            summary.errors,
            dry_run,
        )
        return summary

    def _process_invoice(
        self,
        invoice: Invoice,
        *,
        now: datetime,
        dry_run: bool,
        run_id: str | None,
    ) -> ReminderResult:
        masked = mask_contact_target(invoice.contact_target, invoice.contact_channel)

        try:
            last_event = self._history.latest_event(invoice.invoice_id)
        except Exception as exc:
            logger.warning("reminder history fetch failed for invoice %s: %s", invoice.invoice_id, exc)
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status="error",
                reason="history_fetch_failed",
                error_code="history_fetch_failed",
                error_message=str(exc),
                contact_target_masked=masked,
            )

        decision = evaluate(invoice, last_event, now, policy=self._policy)
        if not decision.eligible:
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status="skipped",
                reason=decision.reason,
                next_eligible_at=decision.next_eligible_at,
                contact_target_masked=masked,
            )

        if dry_run:
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status="dry_run",
                reason=decision.reason,
                eligible=True,
                contact_target_masked=masked,
            )

        # Payment may have landed after the unpaid set was fetched.
        try:
            current = self._invoices.get_invoice(invoice.invoice_id)
        except InvoiceNotFoundError:
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status="skipped",
                reason="invoice_missing",
                eligible=True,
                contact_target_masked=masked,
            )
        except Exception as exc:
            logger.warning("invoice status re-check failed for invoice %s: %s", invoice.invoice_id, exc)
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status="error",
                reason="status_recheck_failed",
                eligible=True,
                error_code="status_recheck_failed",
                error_message=str(exc),
                contact_target_masked=masked,
            )
        if current.status == "paid":
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status="skipped",
                reason="paid",
                eligible=True,
                contact_target_masked=masked,
            )

        try:
            claimed = self._history.claim_window(
                invoice.invoice_id,
                now=now,
                window=self._policy.throttle,
                run_id=run_id,
            )
        except Exception as exc:
            logger.warning("throttle window claim failed for invoice %s: %s", invoice.invoice_id, exc)
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status="error",
                reason="history_claim_failed",
                eligible=True,
                error_code="history_claim_failed",
                error_message=str(exc),
                contact_target_masked=masked,
            )
        if not claimed:
            logger.info("invoice %s already claimed by a concurrent run", invoice.invoice_id)
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status="skipped",
                reason="claimed_elsewhere",
                eligible=True,
                contact_target_masked=masked,
            )

        request = NotificationRequest.from_invoice(
            current,
            idempotency_key=reminder_idempotency_key(invoice.invoice_id, now, self._policy.throttle),
        )
        notification = self._dispatch(request)
        outcome = "sent" if notification.status == "sent" else "failed"

        if outcome == "failed" and self._releases_window(notification):
            try:
                self._history.release_window(
                    invoice.invoice_id,
                    now=now,
                    window=self._policy.throttle,
                    run_id=run_id,
                )
            except Exception as exc:
                # the claim then holds until the throttle interval elapses
                logger.warning("throttle window release failed for invoice %s: %s", invoice.invoice_id, exc)
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status="failed",
                reason="provider_error",
                eligible=True,
                attempted_at=notification.attempted_at,
                error_code=notification.error_code,
                error_message=notification.error_message,
                contact_target_masked=masked,
            )

        reason = decision.reason if outcome == "sent" else "provider_error"
        try:
            event = self._history.append_event(
                invoice_id=invoice.invoice_id,
                channel=current.contact_channel,
                outcome=outcome,
                sent_at=now,
                run_id=run_id,
                provider_message_id=notification.provider_message_id,
                error_code=notification.error_code,
            )
        except Exception as exc:
            logger.exception("reminder history append failed for invoice %s", invoice.invoice_id)
            return ReminderResult(
                invoice_id=invoice.invoice_id,
                status=outcome,
                reason=reason,
                eligible=True,
                attempted_at=notification.attempted_at,
                provider_message_id=notification.provider_message_id,
                error_code=HISTORY_APPEND_FAILED,
                error_message=str(exc),
                contact_target_masked=masked,
            )

        return ReminderResult(
            invoice_id=invoice.invoice_id,
            status=outcome,
            reason=reason,
            eligible=True,
            attempted_at=notification.attempted_at,
            event_id=event.event_id,
            provider_message_id=notification.provider_message_id,
            error_code=notification.error_code,
            error_message=notification.error_message,
            next_eligible_at=now + self._policy.throttle,
            contact_target_masked=masked,
        )

    def _releases_window(self, notification: NotificationResult) -> bool:
        if notification.error_code == DISPATCH_NOT_STARTED:
            return True
        if notification.error_code == DISPATCH_TIMEOUT:
            return False
        return self._failed_attempt_policy == "retry_next_run"

    def _dispatch(self, request: NotificationRequest) -> NotificationResult:
        if self._dispatch_timeout_seconds is None:
            try:
                return self._sender.send_payment_reminder(request, dry_run=False)
            except Exception as exc:
                return self._dispatch_exception(request, exc)

        # One executor per call, so the timeout starts with the send itself.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reminder-dispatch")
        future = executor.submit(self._sender.send_payment_reminder, request, dry_run=False)
        try:
            return future.result(timeout=self._dispatch_timeout_seconds)
        except FutureTimeoutError:
            if future.cancel():
                logger.warning("reminder dispatch for invoice %s never started", request.invoice_id)
                return NotificationResult(
                    status="failed",
                    attempted_at=_now_utc(),
                    error_code=DISPATCH_NOT_STARTED,
                    error_message="dispatch was cancelled before reaching the provider",
                )
            logger.warning("reminder dispatch timed out for invoice %s", request.invoice_id)
            return NotificationResult(
                status="failed",
                attempted_at=_now_utc(),
                error_code=DISPATCH_TIMEOUT,
                error_message=f"dispatch exceeded {self._dispatch_timeout_seconds}s",
            )
        except Exception as exc:
            return self._dispatch_exception(request, exc)
        finally:
            executor.shutdown(wait=False)

    def _dispatch_exception(self, request: NotificationRequest, exc: Exception) -> NotificationResult:
        logger.error("reminder dispatch raised for invoice %s", request.invoice_id, exc_info=exc)
        return NotificationResult(
            status="failed",
            attempted_at=_now_utc(),
            error_code="dispatch_exception",
            error_message=str(exc),
        )
