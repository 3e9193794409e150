import argparse
import json
import logging
import os
import signal
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

import psycopg2

from .admin_service import PERIODS, AdminService
from .config import ConfigurationError, Settings, load_settings
from .migrator import MigrationRunner
from .pipeline import Pipeline, build_pipeline, run_pipeline

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chain-mirror")
    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("migrate")

    poll = subparsers.add_parser("poll")
    _ = poll.add_argument("--once", action="store_true")

    backfill = subparsers.add_parser("backfill")
    _ = backfill.add_argument("--from-block", required=True, type=int)
    _ = backfill.add_argument("--to-block", required=True, type=int)

    dispatch = subparsers.add_parser("dispatch")
    _ = dispatch.add_argument("--once", action="store_true")

    reconcile = subparsers.add_parser("reconcile")
    _ = reconcile.add_argument("--wallet")
    _ = reconcile.add_argument("--loop", action="store_true")

    commission_stats = subparsers.add_parser("commission-stats")
    _ = commission_stats.add_argument("--user", required=True)
    _ = commission_stats.add_argument("--start")
    _ = commission_stats.add_argument("--end")

    top_referrers = subparsers.add_parser("top-referrers")
    _ = top_referrers.add_argument("--period", default="all", choices=list(PERIODS))
    _ = top_referrers.add_argument("--limit", type=int, default=10)

    membership = subparsers.add_parser("membership")
    _ = membership.add_argument("--wallet", required=True)

    failed_deliveries = subparsers.add_parser("failed-deliveries")
    _ = failed_deliveries.add_argument("--limit", type=int, default=50)

    commission_audit = subparsers.add_parser("commission-audit")
    _ = commission_audit.add_argument("--status", choices=["pending", "completed", "failed"])
    _ = commission_audit.add_argument("--limit", type=int, default=50)

    requeue_delivery = subparsers.add_parser("requeue-delivery")
    _ = requeue_delivery.add_argument("--task-id", required=True)

    housekeeping = subparsers.add_parser("housekeeping")
    _ = housekeeping.add_argument("--archive-after-days", type=int, default=30)
    _ = housekeeping.add_argument("--failed-commission-days", type=int, default=90)

    _ = subparsers.add_parser("system-stats")
    _ = subparsers.add_parser("health")

    return parser


def _parse_iso_datetime(raw: Optional[str], field_name: str) -> Optional[datetime]:
    if raw is None:
        return None
    normalized = raw.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"{field_name} must be ISO-8601 datetime") from exc
    if dt.tzinfo is None:
        raise ValueError(f"{field_name} must include timezone offset (e.g. +00:00)")
    return dt


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _stop_event() -> threading.Event:
    stop = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        LOGGER.info("received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)
    return stop


def build_admin_service(pipeline: Pipeline) -> AdminService:
    return AdminService(
        pipeline.store,
        pipeline.chain,
        pipeline.ledger,
        pipeline.queue,
        pipeline.reconciler,
    )


def migrate_command() -> dict[str, object]:
    dsn = os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")
    if not dsn:
        raise ConfigurationError(["SUPABASE_DB_URL or DATABASE_URL is required for migrate"])
    conn = psycopg2.connect(dsn)
    try:
        applied = MigrationRunner(conn).apply_pending()
    finally:
        conn.close()
    return {"applied": applied}


def poll_command(pipeline: Pipeline, once: bool = False) -> dict[str, object]:
    if once:
        return pipeline.poller.poll_once().to_dict()
    stop = _stop_event()
    pipeline.channel.start()
    try:
        pipeline.poller.run_forever(stop, pipeline.settings.poll_interval_seconds)
    finally:
        pipeline.channel.stop()
    return {"stopped": True}


def dispatch_command(pipeline: Pipeline, once: bool = False) -> dict[str, object]:
    if once:
        return pipeline.dispatcher.drain_once().to_dict()
    pipeline.dispatcher.run_forever(_stop_event())
    return {"stopped": True}


def reconcile_command(
    pipeline: Pipeline, wallet: Optional[str] = None, loop: bool = False
) -> dict[str, object]:
    if loop:
        pipeline.reconciler.run_forever(
            _stop_event(), pipeline.settings.reconcile_interval_seconds
        )
        return {"stopped": True}
    return build_admin_service(pipeline).trigger_reconciliation(wallet)


def housekeeping_command(
    pipeline: Pipeline, archive_after_days: int, failed_commission_days: int
) -> dict[str, object]:
    now = datetime.now(timezone.utc)
    archived = pipeline.store.archive_settled_events(
        older_than=now - timedelta(days=archive_after_days), now=now
    )
    archived_commissions = pipeline.ledger.cleanup_failed(
        now - timedelta(days=failed_commission_days)
    )
    return {"archived_events": archived, "archived_failed_commissions": archived_commissions}


def run_command(args: argparse.Namespace, settings: Settings) -> object:
    pipeline = build_pipeline(settings)
    admin = build_admin_service(pipeline)

    if args.command == "poll":
        return poll_command(pipeline, once=args.once)
    if args.command == "backfill":
        return run_pipeline(pipeline, from_block=args.from_block, to_block=args.to_block)
    if args.command == "dispatch":
        return dispatch_command(pipeline, once=args.once)
    if args.command == "reconcile":
        return reconcile_command(pipeline, wallet=args.wallet, loop=args.loop)
    if args.command == "commission-stats":
        return admin.get_commission_stats(
            args.user,
            start=_parse_iso_datetime(args.start, "start"),
            end=_parse_iso_datetime(args.end, "end"),
        )
    if args.command == "top-referrers":
        return admin.get_top_referrers(period=args.period, limit=args.limit)
    if args.command == "membership":
        return admin.get_membership_mirror(args.wallet)
    if args.command == "failed-deliveries":
        return admin.get_failed_deliveries(limit=args.limit)
    if args.command == "commission-audit":
        return admin.get_commission_audit(status=args.status, limit=args.limit)
    if args.command == "requeue-delivery":
        return admin.requeue_delivery(args.task_id)
    if args.command == "housekeeping":
        return housekeeping_command(
            pipeline, args.archive_after_days, args.failed_commission_days
        )
    if args.command == "system-stats":
        return admin.get_system_stats()
    if args.command == "health":
        return admin.health_check()
    raise ValueError(f"unsupported command: {args.command}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "migrate":
            configure_logging(os.getenv("LOG_LEVEL", "INFO"))
            result = migrate_command()
        else:
            settings = load_settings()
            configure_logging(settings.log_level)
            result = run_command(args, settings)
    except ConfigurationError as error:
        for problem in error.problems:
            print(f"configuration error: {problem}", file=sys.stderr)
        return 2
    except ValueError as error:
        print(f"error: {error}", file=sys.stderr)
        return 1

    print(json.dumps(result, default=str))
    if args.command == "health" and isinstance(result, dict) and not result.get("healthy"):
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
