from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from fee_reminders import api as api_module
from fee_reminders.billing_store import InMemoryInvoiceRepository
from fee_reminders.main import create_app
from fee_reminders.models import Invoice
from fee_reminders.notifier import StubNotifierSender

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PREFIX = "/api/v1/billing"


class BrokenInvoices(InMemoryInvoiceRepository):
    def list_unpaid_invoices(self) -> list[Invoice]:
        raise ConnectionError("billing database down")


def _invoice(invoice_id: str, *, created_at: datetime, contact_target: str = "parent@example.com") -> Invoice:
    return Invoice(
        invoice_id=invoice_id,
        student_id=f"student-{invoice_id}",
        student_name="Nisha Patel",
        contact_channel="email",
        contact_target=contact_target,
        amount=1800.0,
        created_at=created_at,
    )


def _client(invoices: list[Invoice] | None = None) -> TestClient:
    api_module.reset_runtime_state_for_tests()
    api_module.notifier_sender = StubNotifierSender(enabled=True, channel="email,sms")
    if invoices:
        api_module.runtime.invoices.upsert_invoices(invoices)
    return TestClient(create_app())


def _aged_invoices() -> list[Invoice]:
    real_now = datetime.now(timezone.utc)
    return [
        _invoice("INV-001", created_at=real_now - timedelta(days=30)),
        _invoice("INV-002", created_at=real_now - timedelta(days=2)),
    ]


def test_run_once_sends_and_returns_camel_case_summary() -> None:
    client = _client(_aged_invoices())

    response = client.post(f"{PREFIX}/reminders/run/once", json={})

    assert response.status_code == 200
    data = response.json()
    assert data["totalUnpaid"] == 2
    assert data["eligible"] == 1
    assert data["sent"] == 1
    assert data["failed"] == 0
    assert data["errors"] == 0
    assert data["dryRun"] is False
    assert data["runId"].startswith("rrun_")
    sent = next(value for value in data["results"] if value["invoiceId"] == "INV-001")
    assert sent["status"] == "sent"
    assert sent["reason"] == "first_reminder"
    assert sent["contactTargetMasked"] == "p***@example.com"

    second = client.post(f"{PREFIX}/reminders/run/once", json={})
    assert second.status_code == 200
    assert second.json()["sent"] == 0


def test_run_once_without_body_runs_live() -> None:
    client = _client(_aged_invoices())

    response = client.post(f"{PREFIX}/reminders/run/once")

    assert response.status_code == 200
    assert response.json()["sent"] == 1


def test_dry_run_with_now_override_does_not_send() -> None:
    client = _client([_invoice("INV-001", created_at=NOW - timedelta(days=16))])

    response = client.post(
        f"{PREFIX}/reminders/run/once",
        json={"dry_run": True, "now_override": NOW.isoformat()},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["dryRun"] is True
    assert data["eligible"] == 1
    assert data["sent"] == 0
    assert data["results"][0]["status"] == "dry_run"

    history = client.get(f"{PREFIX}/reminders/history/INV-001")
    assert history.status_code == 200
    assert history.json()["events"] == []


def test_live_run_rejects_now_override() -> None:
    client = _client(_aged_invoices())

    response = client.post(f"{PREFIX}/reminders/run/once", json={"now_override": NOW.isoformat()})

    assert response.status_code == 400
    assert "dry runs" in response.json()["detail"]


def test_run_once_idempotency_replay_and_conflict() -> None:
    client = _client(_aged_invoices())

    first = client.post(f"{PREFIX}/reminders/run/once", json={"idempotency_key": "cron-2026-03-01"})
    replay = client.post(f"{PREFIX}/reminders/run/once", json={"idempotency_key": "cron-2026-03-01"})
    conflict = client.post(
        f"{PREFIX}/reminders/run/once",
        json={"idempotency_key": "cron-2026-03-01", "dry_run": True},
    )

    assert first.status_code == 200
    assert replay.status_code == 200
    assert replay.json() == first.json()
    assert conflict.status_code == 409


def test_run_once_returns_503_when_invoices_unavailable() -> None:
    client = _client()
    original = api_module.runtime.invoices
    api_module.runtime.invoices = BrokenInvoices()
    try:
        response = client.post(f"{PREFIX}/reminders/run/once", json={})
    finally:
        api_module.runtime.invoices = original

    assert response.status_code == 503
    assert "unpaid invoices" in response.json()["detail"]


def test_evaluate_previews_eligibility() -> None:
    client = _client([_invoice("INV-001", created_at=NOW - timedelta(days=10))])

    early = client.post(f"{PREFIX}/reminders/evaluate", json={"now_override": NOW.isoformat()})
    later = client.post(
        f"{PREFIX}/reminders/evaluate",
        json={"now_override": (NOW + timedelta(days=5)).isoformat()},
    )

    assert early.status_code == 200
    assert early.json()["eligible"] == 0
    assert early.json()["results"][0]["reason"] == "too_new"
    assert later.json()["eligible"] == 1


def test_summary_reports_unpaid_and_last_run() -> None:
    client = _client(_aged_invoices())

    before = client.get(f"{PREFIX}/reminders/summary")
    assert before.status_code == 200
    assert before.json()["unpaid_count"] == 2
    assert before.json()["eligible_now_count"] == 1
    assert before.json()["pending_amount"] == {"INR": 3600.0}
    assert before.json()["last_run_id"] is None

    run = client.post(f"{PREFIX}/reminders/run/once", json={}).json()

    after = client.get(f"{PREFIX}/reminders/summary").json()
    assert after["eligible_now_count"] == 0
    assert after["last_run_id"] == run["runId"]
    assert after["last_run_status"] == "completed"
    assert after["last_run_sent_count"] == 1
    assert after["pending_amount"] == {"INR": 3600.0}


def test_history_and_run_detail_endpoints() -> None:
    client = _client(_aged_invoices())
    run = client.post(f"{PREFIX}/reminders/run/once", json={}).json()

    history = client.get(f"{PREFIX}/reminders/history/INV-001")
    assert history.status_code == 200
    events = history.json()["events"]
    assert len(events) == 1
    assert events[0]["outcome"] == "sent"
    assert events[0]["run_id"] == run["runId"]

    detail = client.get(f"{PREFIX}/reminders/runs/{run['runId']}")
    assert detail.status_code == 200
    assert detail.json()["status"] == "completed"
    assert detail.json()["triggered_by"] == "api"
    assert detail.json()["sent"] == 1

    assert client.get(f"{PREFIX}/reminders/history/INV-404").status_code == 404
    assert client.get(f"{PREFIX}/reminders/runs/rrun_missing").status_code == 404


def test_mark_paid_stops_reminders() -> None:
    client = _client(_aged_invoices())

    paid = client.post(f"{PREFIX}/invoices/INV-001/paid")
    assert paid.status_code == 200
    assert paid.json() == {"invoice_id": "INV-001", "status": "paid"}

    run = client.post(f"{PREFIX}/reminders/run/once", json={}).json()
    assert run["totalUnpaid"] == 1
    assert run["sent"] == 0

    assert client.post(f"{PREFIX}/invoices/INV-404/paid").status_code == 404


def test_disabled_notifier_records_failed_attempt() -> None:
    client = _client(_aged_invoices())
    api_module.notifier_sender = StubNotifierSender(enabled=False)

    data = client.post(f"{PREFIX}/reminders/run/once", json={}).json()

    assert data["failed"] == 1
    result = next(value for value in data["results"] if value["invoiceId"] == "INV-001")
    assert result["errorCode"] == "notifier_disabled"
