from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from fee_reminders.billing_store import InMemoryInvoiceRepository
from fee_reminders.eligibility import ReminderPolicy
from fee_reminders.history_store import InMemoryReminderHistoryRepository
from fee_reminders.models import Invoice, ReminderEvent
from fee_reminders.notifier import NotificationRequest, NotificationResult, StubNotifierSender
from fee_reminders.scheduler import (
    DISPATCH_NOT_STARTED,
    DISPATCH_TIMEOUT,
    InvoiceFetchError,
    ReminderScheduler,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _invoice(invoice_id: str, *, age_days: float = 20, contact_target: str | None = None) -> Invoice:
    return Invoice(
        invoice_id=invoice_id,
        student_id=f"student-{invoice_id}",
        student_name=f"Student {invoice_id}",
        contact_channel="email",
        contact_target=contact_target or f"{invoice_id.lower()}@example.com",
        amount=2500.0,
        created_at=NOW - timedelta(days=age_days),
    )


class RecordingSender:
    def __init__(self, *, fail_for: set[str] | None = None) -> None:
        self._lock = threading.Lock()
        self._fail_for = fail_for or set()
        self.calls: list[str] = []

    def send_payment_reminder(self, payload: NotificationRequest, *, dry_run: bool) -> NotificationResult:
        with self._lock:
            self.calls.append(payload.invoice_id)
        attempted_at = datetime.now(timezone.utc)
        if payload.invoice_id in self._fail_for:
            return NotificationResult(status="failed", attempted_at=attempted_at, error_code="provider_down")
        return NotificationResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"msg-{payload.invoice_id}",
        )


class RaisingSender:
    def send_payment_reminder(self, payload: NotificationRequest, *, dry_run: bool) -> NotificationResult:
        raise RuntimeError("gateway exploded")


class BlockingSender:
    def __init__(self) -> None:
        self.release = threading.Event()

    def send_payment_reminder(self, payload: NotificationRequest, *, dry_run: bool) -> NotificationResult:
        self.release.wait(5)
        return NotificationResult(status="sent", attempted_at=datetime.now(timezone.utc))


class SlowFirstSendSender(RecordingSender):
    """Delivers every reminder, but the first send for one invoice is slow."""

    def __init__(self, *, slow_invoice_id: str, delay_seconds: float) -> None:
        super().__init__()
        self._slow_invoice_id = slow_invoice_id
        self._delay_seconds = delay_seconds
        self.slow_send_finished = threading.Event()

    def send_payment_reminder(self, payload: NotificationRequest, *, dry_run: bool) -> NotificationResult:
        with self._lock:
            first_slow = payload.invoice_id == self._slow_invoice_id and self._slow_invoice_id not in self.calls
        if first_slow:
            time.sleep(self._delay_seconds)
        result = super().send_payment_reminder(payload, dry_run=dry_run)
        if first_slow:
            self.slow_send_finished.set()
        return result


class FlakyHistory(InMemoryReminderHistoryRepository):
    def __init__(self, *, broken_invoice_id: str) -> None:
        super().__init__()
        self._broken_invoice_id = broken_invoice_id

    def latest_event(self, invoice_id: str) -> ReminderEvent | None:
        if invoice_id == self._broken_invoice_id:
            raise ConnectionError("history store unavailable")
        return super().latest_event(invoice_id)


class UnwritableHistory(InMemoryReminderHistoryRepository):
    def append_event(self, **kwargs) -> ReminderEvent:  # type: ignore[override]
        raise ConnectionError("history store is read-only")


class BrokenInvoices(InMemoryInvoiceRepository):
    def list_unpaid_invoices(self) -> list[Invoice]:
        raise ConnectionError("billing database down")


class PaidDuringRun(InMemoryInvoiceRepository):
    """Marks an invoice paid right after the unpaid set has been read."""

    def __init__(self, *, paid_invoice_id: str) -> None:
        super().__init__()
        self._paid_invoice_id = paid_invoice_id

    def list_unpaid_invoices(self) -> list[Invoice]:
        unpaid = super().list_unpaid_invoices()
        self.mark_paid(self._paid_invoice_id)
        return unpaid


def _scheduler(
    *,
    invoices: InMemoryInvoiceRepository,
    history: InMemoryReminderHistoryRepository | None = None,
    sender=None,
    **kwargs,
) -> ReminderScheduler:
    return ReminderScheduler(
        invoices=invoices,
        history=history or InMemoryReminderHistoryRepository(),
        sender=sender or RecordingSender(),
        **kwargs,
    )


def test_run_once_sends_first_reminders_and_records_events() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001"), _invoice("INV-002", age_days=10)])
    history = InMemoryReminderHistoryRepository()
    sender = RecordingSender()

    summary = _scheduler(invoices=invoices, history=history, sender=sender).run_once(NOW, run_id="run-1")

    assert summary.total_unpaid == 2
    assert summary.eligible == 1
    assert summary.sent == 1
    assert summary.failed == 0
    assert summary.errors == 0
    assert summary.skipped == 1
    assert sender.calls == ["INV-001"]

    sent = next(value for value in summary.results if value.invoice_id == "INV-001")
    assert sent.status == "sent"
    assert sent.reason == "first_reminder"
    assert sent.provider_message_id == "msg-INV-001"
    assert sent.next_eligible_at == NOW + timedelta(days=2)
    assert sent.contact_target_masked == "i***@example.com"

    too_new = next(value for value in summary.results if value.invoice_id == "INV-002")
    assert too_new.status == "skipped"
    assert too_new.reason == "too_new"
    assert too_new.next_eligible_at == NOW + timedelta(days=5)

    events = history.list_events("INV-001")
    assert len(events) == 1
    assert events[0].outcome == "sent"
    assert events[0].sent_at == NOW
    assert events[0].run_id == "run-1"
    assert history.list_events("INV-002") == []


def test_results_follow_invoice_creation_order() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices(
        [
            _invoice("INV-C", age_days=16),
            _invoice("INV-A", age_days=40),
            _invoice("INV-B", age_days=25),
        ]
    )

    summary = _scheduler(invoices=invoices, max_workers=3).run_once(NOW)

    assert [value.invoice_id for value in summary.results] == ["INV-A", "INV-B", "INV-C"]


def test_history_failure_isolated_to_single_invoice() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice(f"INV-00{index}", age_days=20 + index) for index in range(1, 6)])
    history = FlakyHistory(broken_invoice_id="INV-003")
    sender = RecordingSender()

    summary = _scheduler(invoices=invoices, history=history, sender=sender).run_once(NOW)

    assert summary.total_unpaid == 5
    assert summary.errors == 1
    assert summary.sent == 4
    assert summary.eligible == 4
    assert sorted(sender.calls) == ["INV-001", "INV-002", "INV-004", "INV-005"]

    broken = next(value for value in summary.results if value.invoice_id == "INV-003")
    assert broken.status == "error"
    assert broken.error_code == "history_fetch_failed"
    assert "history store unavailable" in (broken.error_message or "")


def test_second_run_at_same_instant_sends_nothing() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001"), _invoice("INV-002", age_days=30)])
    history = InMemoryReminderHistoryRepository()
    sender = RecordingSender()
    scheduler = _scheduler(invoices=invoices, history=history, sender=sender)

    first = scheduler.run_once(NOW)
    second = scheduler.run_once(NOW)

    assert first.sent == 2
    assert second.sent == 0
    assert second.eligible == 0
    assert {value.reason for value in second.results} == {"throttled"}
    assert len(sender.calls) == 2
    assert len(history.list_events()) == 2


def test_run_after_throttle_interval_sends_again() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001")])
    history = InMemoryReminderHistoryRepository()
    scheduler = _scheduler(invoices=invoices, history=history)

    scheduler.run_once(NOW)
    later = scheduler.run_once(NOW + timedelta(days=2))

    assert later.sent == 1
    assert later.results[0].reason == "throttle_elapsed"
    assert [value.sent_at for value in history.list_events("INV-001")] == [NOW + timedelta(days=2), NOW]


def test_dry_run_reports_eligibility_without_side_effects() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001"), _invoice("INV-002", age_days=3)])
    history = InMemoryReminderHistoryRepository()
    sender = RecordingSender()

    summary = _scheduler(invoices=invoices, history=history, sender=sender).run_once(NOW, dry_run=True)

    assert summary.dry_run is True
    assert summary.eligible == 1
    assert summary.sent == 0
    assert summary.results[0].status == "dry_run"
    assert summary.results[0].eligible is True
    assert sender.calls == []
    assert history.list_events() == []


def test_payment_between_fetch_and_dispatch_is_not_reminded() -> None:
    invoices = PaidDuringRun(paid_invoice_id="INV-001")
    invoices.upsert_invoices([_invoice("INV-001"), _invoice("INV-002")])
    history = InMemoryReminderHistoryRepository()
    sender = RecordingSender()

    summary = _scheduler(invoices=invoices, history=history, sender=sender).run_once(NOW)

    assert summary.total_unpaid == 2
    assert sender.calls == ["INV-002"]
    paid = next(value for value in summary.results if value.invoice_id == "INV-001")
    assert paid.status == "skipped"
    assert paid.reason == "paid"
    assert history.list_events("INV-001") == []


def test_invoice_fetch_failure_aborts_run() -> None:
    sender = RecordingSender()
    scheduler = _scheduler(invoices=BrokenInvoices(), sender=sender)

    with pytest.raises(InvoiceFetchError):
        scheduler.run_once(NOW)

    assert sender.calls == []


def test_empty_invoice_set_produces_empty_summary() -> None:
    summary = _scheduler(invoices=InMemoryInvoiceRepository()).run_once(NOW)

    assert summary.total_unpaid == 0
    assert summary.eligible == 0
    assert summary.results == []


def test_failed_dispatch_consumes_window_by_default() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001")])
    history = InMemoryReminderHistoryRepository()
    sender = RecordingSender(fail_for={"INV-001"})
    scheduler = _scheduler(invoices=invoices, history=history, sender=sender)

    first = scheduler.run_once(NOW)
    retry = scheduler.run_once(NOW + timedelta(hours=1))

    assert first.failed == 1
    assert first.results[0].reason == "provider_error"
    assert first.results[0].error_code == "provider_down"
    events = history.list_events("INV-001")
    assert len(events) == 1
    assert events[0].outcome == "failed"
    assert events[0].error_code == "provider_down"
    assert retry.results[0].reason == "throttled"
    assert sender.calls == ["INV-001"]


def test_failed_dispatch_retries_next_run_when_configured() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001")])
    history = InMemoryReminderHistoryRepository()
    sender = RecordingSender(fail_for={"INV-001"})
    scheduler = _scheduler(
        invoices=invoices,
        history=history,
        sender=sender,
        failed_attempt_policy="retry_next_run",
    )

    first = scheduler.run_once(NOW, run_id="run-1")
    retry = scheduler.run_once(NOW + timedelta(minutes=5), run_id="run-2")

    assert first.failed == 1
    assert first.results[0].event_id is None
    assert history.list_events("INV-001") == []
    assert retry.results[0].status == "failed"
    assert sender.calls == ["INV-001", "INV-001"]


def test_dispatch_exception_is_recorded_as_failure() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001"), _invoice("INV-002")])
    history = InMemoryReminderHistoryRepository()

    summary = _scheduler(invoices=invoices, history=history, sender=RaisingSender()).run_once(NOW)

    assert summary.failed == 2
    assert summary.errors == 0
    assert {value.error_code for value in summary.results} == {"dispatch_exception"}
    assert {value.outcome for value in history.list_events()} == {"failed"}


def test_dispatch_timeout_is_recorded_as_failure() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001")])
    history = InMemoryReminderHistoryRepository()
    sender = BlockingSender()

    try:
        summary = _scheduler(
            invoices=invoices,
            history=history,
            sender=sender,
            dispatch_timeout_seconds=0.05,
        ).run_once(NOW)
    finally:
        sender.release.set()

    assert summary.failed == 1
    assert summary.results[0].error_code == "timeout"
    assert history.list_events("INV-001")[0].error_code == "timeout"


def test_history_append_failure_counts_as_error_but_keeps_send() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001")])
    sender = RecordingSender()

    summary = _scheduler(invoices=invoices, history=UnwritableHistory(), sender=sender).run_once(NOW)

    assert summary.sent == 1
    assert summary.errors == 1
    result = summary.results[0]
    assert result.status == "sent"
    assert result.error_code == "history_append_failed"
    assert result.provider_message_id == "msg-INV-001"


def test_overlapping_runs_send_at_most_once_per_invoice() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice(f"INV-{index:03d}") for index in range(1, 21)])
    history = InMemoryReminderHistoryRepository()
    sender = RecordingSender()
    schedulers = [
        _scheduler(invoices=invoices, history=history, sender=sender, max_workers=4) for _ in range(3)
    ]

    with ThreadPoolExecutor(max_workers=3) as executor:
        summaries = list(
            executor.map(
                lambda pair: pair[1].run_once(NOW + timedelta(seconds=pair[0]), run_id=f"run-{pair[0]}"),
                enumerate(schedulers),
            )
        )

    assert sum(value.sent for value in summaries) == 20
    assert sorted(sender.calls) == sorted(f"INV-{index:03d}" for index in range(1, 21))
    for index in range(1, 21):
        assert len(history.list_events(f"INV-{index:03d}")) == 1


def test_irregular_runs_never_violate_age_or_throttle() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices(
        [
            _invoice("INV-001", age_days=0),
            _invoice("INV-002", age_days=14.5),
            _invoice("INV-003", age_days=30),
        ]
    )
    history = InMemoryReminderHistoryRepository()
    scheduler = _scheduler(invoices=invoices, history=history)
    offsets_hours = [0, 1, 13, 30, 47, 48, 49, 60, 96, 97, 143.5, 200, 361, 362, 400, 410]

    for offset in offsets_hours:
        scheduler.run_once(NOW + timedelta(hours=offset))

    for invoice in invoices.list_unpaid_invoices():
        sent_times = sorted(value.sent_at for value in history.list_events(invoice.invoice_id))
        assert sent_times, invoice.invoice_id
        assert sent_times[0] >= invoice.created_at + timedelta(days=15)
        for earlier, later in zip(sent_times, sent_times[1:]):
            assert later - earlier >= timedelta(days=2)


def test_stub_sender_failure_target_is_recorded() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001", contact_target="fail@example.com")])
    history = InMemoryReminderHistoryRepository()
    sender = StubNotifierSender(enabled=True, channel="email")

    summary = _scheduler(invoices=invoices, history=history, sender=sender).run_once(NOW)

    assert summary.failed == 1
    assert summary.results[0].error_code == "stub_delivery_failed"


def test_custom_policy_is_applied() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice("INV-001", age_days=8)])
    policy = ReminderPolicy(min_age=timedelta(days=7), throttle=timedelta(hours=12))

    summary = _scheduler(invoices=invoices, policy=policy).run_once(NOW)

    assert summary.sent == 1
    assert summary.results[0].next_eligible_at == NOW + timedelta(hours=12)


def test_scheduler_rejects_invalid_configuration() -> None:
    invoices = InMemoryInvoiceRepository()

    with pytest.raises(ValueError):
        _scheduler(invoices=invoices, max_workers=0)
    with pytest.raises(ValueError):
        _scheduler(invoices=invoices, failed_attempt_policy="drop")
    with pytest.raises(ValueError):
        _scheduler(invoices=invoices, policy=ReminderPolicy(throttle=timedelta(0)))


def test_slow_send_behind_shared_worker_is_not_repeated_next_run() -> None:
    invoices = InMemoryInvoiceRepository()
    invoices.upsert_invoices([_invoice(f"INV-00{index}", age_days=30 - index) for index in range(1, 5)])
    history = InMemoryReminderHistoryRepository()
    sender = SlowFirstSendSender(slow_invoice_id="INV-001", delay_seconds=0.35)
    scheduler = _scheduler(
        invoices=invoices,
        history=history,
        sender=sender,
        max_workers=1,
        dispatch_timeout_seconds=0.1,
        failed_attempt_policy="retry_next_run",
    )

    first = scheduler.run_once(NOW, run_id="run-1")
    assert sender.slow_send_finished.wait(2)
    second = scheduler.run_once(NOW + timedelta(minutes=5), run_id="run-2")

    slow = next(value for value in first.results if value.invoice_id == "INV-001")
    assert slow.status == "failed"
    assert slow.error_code == "timeout"
    assert first.sent == 3
    assert [value.outcome for value in history.list_events("INV-001")] == ["failed"]

    assert second.sent == 0
    assert second.failed == 0
    assert {value.reason for value in second.results} == {"throttled"}
    assert sorted(sender.calls) == ["INV-001", "INV-002", "INV-003", "INV-004"]


def test_only_unstarted_dispatch_releases_window_when_consuming() -> None:
    scheduler = _scheduler(invoices=InMemoryInvoiceRepository())
    retrying = _scheduler(invoices=InMemoryInvoiceRepository(), failed_attempt_policy="retry_next_run")

    def failed(code: str) -> NotificationResult:
        return NotificationResult(status="failed", attempted_at=NOW, error_code=code)

    assert scheduler._releases_window(failed(DISPATCH_NOT_STARTED)) is True
    assert scheduler._releases_window(failed(DISPATCH_TIMEOUT)) is False
    assert scheduler._releases_window(failed("provider_down")) is False
    assert retrying._releases_window(failed(DISPATCH_TIMEOUT)) is False
    assert retrying._releases_window(failed("provider_down")) is True
