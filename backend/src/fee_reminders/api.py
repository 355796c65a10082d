from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from .billing_store import InvoiceNotFoundError, pending_amount_by_currency
from .config import get_settings
from .models import (
    InvoicePaidResponse,
    ReminderEvaluateRequest,
    ReminderHistoryResponse,
    ReminderOverviewResponse,
    ReminderRunDetail,
    ReminderRunRequest,
    RunSummary,
)
from .notifier import NotifierSender
from .reminder_runs import IdempotencyConflictError, ReminderWorkflowService, RunNotFoundError
from .runtime import create_runtime
from .scheduler import ReminderRunError

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/billing", tags=["reminders"])
runtime = create_runtime(_settings)
notifier_sender: NotifierSender = runtime.sender


def reset_runtime_state_for_tests() -> None:
    runtime.reset()


def _workflow() -> ReminderWorkflowService:
    # Resolved per request so tests can swap ``notifier_sender``.
    return runtime.workflow(notifier_sender)


@router.post("/reminders/run/once", response_model=RunSummary)
def run_reminders_once(payload: ReminderRunRequest | None = None) -> RunSummary:
    request_payload = payload or ReminderRunRequest(dry_run=_settings.notifier_dry_run_default)
    if (
        request_payload.now_override is not None
        and not request_payload.dry_run
        and not _settings.reminder_allow_live_now_override
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="now_override is only allowed for dry runs",
        )
    try:
        return _workflow().run_once(request_payload, triggered_by="api")
    except IdempotencyConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ReminderRunError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/reminders/evaluate", response_model=RunSummary)
def evaluate_reminders(payload: ReminderEvaluateRequest | None = None) -> RunSummary:
    now = payload.now_override if payload is not None else None
    try:
        return _workflow().evaluate(now)
    except ReminderRunError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/reminders/summary", response_model=ReminderOverviewResponse)
def get_reminder_summary() -> ReminderOverviewResponse:
    workflow = _workflow()
    try:
        preview = workflow.evaluate()
    except ReminderRunError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    try:
        pending_amount = pending_amount_by_currency(runtime.invoices.list_unpaid_invoices())
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="failed to fetch unpaid invoices"
        ) from exc
    latest = workflow.get_latest_run()
    return ReminderOverviewResponse(
        unpaid_count=preview.total_unpaid,
        pending_amount=pending_amount,
        eligible_now_count=preview.eligible,
        last_run_id=latest.run_id if latest else None,
        last_run_at=latest.run_at if latest else None,
        last_run_status=latest.status if latest else None,  # type: ignore[arg-type]
        last_run_sent_count=latest.sent if latest else None,
        last_run_failed_count=latest.failed if latest else None,
        last_run_error_count=latest.errors if latest else None,
    )


@router.get("/reminders/history/{invoice_id}", response_model=ReminderHistoryResponse)
def get_reminder_history(invoice_id: str) -> ReminderHistoryResponse:
    try:
        runtime.invoices.get_invoice(invoice_id)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}") from exc
    return ReminderHistoryResponse(invoice_id=invoice_id, events=runtime.history.list_events(invoice_id))


@router.get("/reminders/runs/{run_id}", response_model=ReminderRunDetail)
def get_reminder_run(run_id: str) -> ReminderRunDetail:
    try:
        record = _workflow().get_run(run_id)
    except RunNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"run not found: {run_id}") from exc
    return ReminderRunDetail(**record.__dict__)


@router.post("/invoices/{invoice_id}/paid", response_model=InvoicePaidResponse)
def mark_invoice_paid(invoice_id: str) -> InvoicePaidResponse:
    try:
        invoice = runtime.invoices.mark_paid(invoice_id)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}") from exc
    return InvoicePaidResponse(invoice_id=invoice.invoice_id, status=invoice.status)
