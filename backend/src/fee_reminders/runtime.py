from __future__ import annotations

from dataclasses import dataclass

from .billing_store import InvoiceRepository, create_invoice_repository
from .config import Settings
from .eligibility import ReminderPolicy
from .history_store import ReminderHistoryRepository, create_history_repository
from .notifier import NotifierSender, create_notifier
from .reminder_runs import ReminderRunRepository, ReminderWorkflowService, create_reminder_run_repository
from .scheduler import ReminderScheduler


@dataclass
class Runtime:
    settings: Settings
    invoices: InvoiceRepository
    history: ReminderHistoryRepository
    runs: ReminderRunRepository
    sender: NotifierSender

    def scheduler(self, sender: NotifierSender | None = None) -> ReminderScheduler:
        return ReminderScheduler(
            invoices=self.invoices,
            history=self.history,
            sender=sender or self.sender,
            policy=ReminderPolicy.from_settings(self.settings),
            max_workers=self.settings.reminder_max_workers,
            failed_attempt_policy=self.settings.reminder_failed_attempt_policy,
            dispatch_timeout_seconds=float(self.settings.notifier_timeout_seconds),
        )

    def workflow(self, sender: NotifierSender | None = None) -> ReminderWorkflowService:
        return ReminderWorkflowService(repository=self.runs, scheduler=self.scheduler(sender))

    def reset(self) -> None:
        self.invoices.reset()
        self.history.reset()
        self.runs.reset()


def create_runtime(settings: Settings) -> Runtime:
    return Runtime(
        settings=settings,
        invoices=create_invoice_repository(
            backend=settings.invoice_store_backend,
            database_url=settings.database_url,
        ),
        history=create_history_repository(
            backend=settings.reminder_store_backend,
            database_url=settings.database_url,
        ),
        runs=create_reminder_run_repository(
            backend=settings.reminder_store_backend,
            database_url=settings.database_url,
        ),
        sender=create_notifier(
            sender_type=settings.notifier_sender_type,
            enabled=settings.notifier_enabled,
            channel=settings.notifier_channel,
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            timeout_seconds=settings.notifier_timeout_seconds,
        ),
    )
