"""Command-line trigger for reminder runs, meant to be called from cron."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime

from pydantic import ValidationError

from .config import get_settings, runtime_config_issues
from .models import ReminderRunRequest
from .reminder_runs import IdempotencyConflictError
from .runtime import create_runtime
from .scheduler import ReminderRunError

logger = logging.getLogger(__name__)


def _parse_now(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO timestamp: {value}") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="fee-reminders", description="Fee reminder engine.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_once = subparsers.add_parser("run-once", help="Evaluate unpaid invoices and send due reminders.")
    run_once.add_argument("--dry-run", action="store_true", help="Report eligibility without sending anything")
    run_once.add_argument("--now", type=_parse_now, default=None, help="Evaluate as of this ISO timestamp")
    run_once.add_argument("--idempotency-key", default=None, help="Replay the stored summary for a repeated key")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    settings = get_settings()
    for issue in runtime_config_issues(settings):
        logger.warning("runtime config warning: %s", issue)

    if args.now is not None and not args.dry_run and not settings.reminder_allow_live_now_override:
        logger.error("--now is only allowed together with --dry-run")
        return 2

    try:
        payload = ReminderRunRequest(
            dry_run=args.dry_run,
            now_override=args.now,
            idempotency_key=args.idempotency_key,
        )
    except ValidationError as exc:
        logger.error("invalid run request: %s", exc)
        return 2

    runtime = create_runtime(settings)
    try:
        summary = runtime.workflow().run_once(payload, triggered_by="cli")
    except (ReminderRunError, IdempotencyConflictError) as exc:
        logger.error("reminder run failed: %s", exc)
        return 1

    sys.stdout.write(summary.model_dump_json(by_alias=True, indent=2) + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
