from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_origins(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip().rstrip("/") for item in value.split(",") if item.strip())


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Fee Reminders"
    api_prefix: str = "/api/v1"
    # Eligibility thresholds.
    reminder_min_age_days: float = 15.0
    reminder_throttle_days: float = 2.0
    reminder_max_workers: int = 4
    # consume_window: a failed dispatch is recorded and uses the throttle window.
    # retry_next_run: a failed dispatch is not recorded and is retried on the next run.
    reminder_failed_attempt_policy: str = "consume_window"
    reminder_allow_live_now_override: bool = False
    reminder_store_backend: str = "inmemory"
    invoice_store_backend: str = "inmemory"
    database_url: str = ""
    notifier_enabled: bool = False
    notifier_dry_run_default: bool = False
    notifier_channel: str = "email,sms,whatsapp"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    notifier_sender_type: str = "stub"
    runtime_config_guard_mode: str = "warn"
    cors_allowed_origins: tuple[str, ...] = ()


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("FEE_REMINDERS_APP_NAME", "Fee Reminders"),
        api_prefix=os.getenv("FEE_REMINDERS_API_PREFIX", "/api/v1"),
        reminder_min_age_days=_as_float(os.getenv("REMINDER_MIN_AGE_DAYS"), 15.0),
        reminder_throttle_days=_as_float(os.getenv("REMINDER_THROTTLE_DAYS"), 2.0),
        reminder_max_workers=_as_int(os.getenv("REMINDER_MAX_WORKERS"), 4),
        reminder_failed_attempt_policy=_normalize_mode(
            os.getenv("REMINDER_FAILED_ATTEMPT_POLICY"),
            default="consume_window",
            allowed={"consume_window", "retry_next_run"},
        ),
        reminder_allow_live_now_override=_as_bool(os.getenv("REMINDER_ALLOW_LIVE_NOW_OVERRIDE"), False),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        invoice_store_backend=os.getenv("INVOICE_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_dry_run_default=_as_bool(os.getenv("NOTIFIER_DRY_RUN_DEFAULT"), False),
        notifier_channel=os.getenv("NOTIFIER_CHANNEL", "email,sms,whatsapp"),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        cors_allowed_origins=_as_origins(os.getenv("CORS_ALLOWED_ORIGINS")),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.reminder_min_age_days < 0:
        issues.append("REMINDER_MIN_AGE_DAYS must not be negative")
    if settings.reminder_throttle_days <= 0:
        issues.append("REMINDER_THROTTLE_DAYS must be greater than zero")
    if settings.reminder_max_workers < 1:
        issues.append("REMINDER_MAX_WORKERS must be at least 1")
    if settings.notifier_timeout_seconds <= 0:
        issues.append("NOTIFIER_TIMEOUT_SECONDS must be greater than zero")
    if settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    uses_database = "postgres" in {
        settings.reminder_store_backend.strip().lower(),
        settings.invoice_store_backend.strip().lower(),
    }
    if uses_database and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when a store backend is postgres")
    return tuple(issues)
