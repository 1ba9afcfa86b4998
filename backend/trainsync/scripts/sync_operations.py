#!/usr/bin/env python3
"""
sync_operations.py

Operator commands for the compliance sync engine.

Every command prints greppable "✓" / "✗" result lines and exits non-zero when
the operation failed.

Usage (from backend/):
  python -m trainsync.scripts.sync_operations process-queue --tenant-id 1
  python -m trainsync.scripts.sync_operations regenerate --tenant-id 1 --force
  python -m trainsync.scripts.sync_operations status
  python -m trainsync.scripts.sync_operations cleanup --days 30
  python -m trainsync.scripts.sync_operations lock-status --tenant-id 1
  python -m trainsync.scripts.sync_operations release-lock --tenant-id 1
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from trainsync.apps.compliance import completion_queue, models, regeneration
from trainsync.apps.compliance.orchestrator import Orchestrator, build_orchestrator
from trainsync.apps.compliance.schemas import DrainResult

logger = logging.getLogger(__name__)

OK = "✓"
FAIL = "✗"


def _heading(title: str) -> None:
    print(title)
    print("=" * len(title))


def _fmt(value) -> str:
    if value is None:
        return "-"
    value = models.as_utc(value)
    return value.strftime("%Y-%m-%d %H:%M:%S")


def configured_tenants(db: Session) -> List[int]:
    rows = (
        db.query(models.ApiCredential.tenant_id)
        .filter(models.ApiCredential.deleted.is_(False))
        .distinct()
        .order_by(models.ApiCredential.tenant_id.asc())
        .all()
    )
    return [int(row[0]) for row in rows]


def _tenant_known(db: Session, tenant_id: int) -> bool:
    return (
        db.query(models.ApiCredential.id)
        .filter(models.ApiCredential.tenant_id == tenant_id)
        .first()
        is not None
    )


def _print_results(result: DrainResult, label) -> None:
    print(f"Results for tenant {label}:")
    print(f"  Processed: {result.processed}")
    print(f"  Successful: {result.successful}")
    print(f"  Failed: {result.failed}")
    print(f"  Skipped: {result.skipped}")
    if result.errors:
        print("  Errors:")
        for error in result.errors:
            print(f"    - {error}")


def _print_queue_stats(db: Session, tenant_id: Optional[int]) -> None:
    stats = completion_queue.queue_stats(db, tenant_id)
    print()
    print("Queue Statistics:")
    print(f"Tenant ID {tenant_id}:" if tenant_id else "All tenants:")
    print(f"  Pending: {stats.pending}")
    print(f"  Completed: {stats.completed}")
    print(f"  Failed: {stats.failed}")


# -----------------------------
# Commands
# -----------------------------

def cmd_process_queue(db: Session, orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    _heading("Processing Compliance Sync Queue")
    if args.tenant_id:
        print(f"Processing queue for tenant ID: {args.tenant_id}")
        result = orchestrator.process_queue(args.tenant_id, limit=args.limit)
        _print_results(result, args.tenant_id)
    else:
        tenants = completion_queue.tenants_with_pending(db)
        if not tenants:
            print("No pending queue items found.")
            return 0
        result = DrainResult()
        for tenant_id in tenants:
            print(f"Processing tenant ID: {tenant_id}")
            tenant_result = orchestrator.process_queue(tenant_id, limit=args.limit)
            _print_results(tenant_result, tenant_id)
            result = result.merge(tenant_result)
        print()
        print("Total Results:")
        _print_results(result, "all")

    if args.show_status:
        _print_queue_stats(db, args.tenant_id or None)

    if result.failed:
        print(f"{FAIL} Queue processing finished with {result.failed} failure(s)")
        return 1
    print(f"{OK} Queue processing completed")
    return 0


def cmd_regenerate(db: Session, orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    _heading("Regenerating Compliance Data")
    if args.tenant_id:
        print(f"Regenerating data for tenant ID: {args.tenant_id}")
        if args.force:
            print("Force mode: attempting immediate regeneration")
        else:
            print("Queue mode: adding to regeneration queue")
        ok = orchestrator.trigger_regeneration(args.tenant_id, force_immediate=args.force)
        if args.force:
            print(f"{OK} Data regeneration completed successfully" if ok else f"{FAIL} Data regeneration failed")
        else:
            print(f"{OK} Data regeneration queued successfully" if ok else f"{FAIL} Failed to queue data regeneration")
        if args.show_status:
            _print_regeneration_status(db, [args.tenant_id])
        return 0 if ok else 1

    tenants = configured_tenants(db)
    if not tenants:
        print("No tenants found with compliance credentials.")
        return 0
    failures = 0
    for tenant_id in tenants:
        ok = orchestrator.trigger_regeneration(tenant_id, force_immediate=args.force)
        print(f"{OK} Tenant {tenant_id}: Success" if ok else f"{FAIL} Tenant {tenant_id}: Failed")
        failures += 0 if ok else 1
    if args.show_status:
        _print_regeneration_status(db, tenants)
    return 1 if failures else 0


def _print_regeneration_status(db: Session, tenant_ids: List[int]) -> None:
    print()
    print("Regeneration Status:")
    for tenant_id in tenant_ids:
        request = regeneration.status(db, tenant_id)
        if request is None:
            print(f"Tenant ID {tenant_id}: No regeneration in progress")
            continue
        print(f"Tenant ID {tenant_id}: {request.status.value}")
        if request.error_message:
            print(f"  Error: {request.error_message}")


def _print_tenant_status(orchestrator: Orchestrator, tenant_id: int) -> None:
    status = orchestrator.status(tenant_id)
    print(f"Tenant ID: {tenant_id}")
    print(f"Lock Status: {'LOCKED' if status.locked else 'UNLOCKED'}")
    print("Queue Stats:")
    print(f"  Pending: {status.queue.pending}")
    print(f"  Completed: {status.queue.completed}")
    print(f"  Failed: {status.queue.failed}")
    if status.regeneration is not None:
        print(f"Regeneration Status: {status.regeneration.status.value}")
        print(f"  Queued: {_fmt(status.regeneration.queued_at)}")
        if status.regeneration.started_at:
            print(f"  Started: {_fmt(status.regeneration.started_at)}")
        if status.regeneration.completed_at:
            print(f"  Completed: {_fmt(status.regeneration.completed_at)}")
    else:
        print("Regeneration Status: None")
    if status.snapshot is not None:
        print("Data File:")
        print(f"  Generated: {_fmt(status.snapshot.generated_at)}")
        print(f"  Records: {status.snapshot.record_count}")
    else:
        print("Data File: Not found")
    if status.last_attempt_status is not None:
        print(f"Last Attempt: {status.last_attempt_status.value}")


def cmd_status(db: Session, orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    _heading("Compliance Sync Status")
    if args.tenant_id:
        _print_tenant_status(orchestrator, args.tenant_id)
        return 0
    tenants = configured_tenants(db)
    if not tenants:
        print("No tenants found with compliance credentials.")
        return 0
    for tenant_id in tenants:
        print("-" * 50)
        _print_tenant_status(orchestrator, tenant_id)
    return 0


def cmd_cleanup(db: Session, orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    _heading("Cleaning Up Old Records")
    print(f"Cleaning up records older than {args.days} days")
    removed_queue = completion_queue.cleanup(db, days=args.days)
    print(f"{OK} Cleaned up {removed_queue} old queue records")
    removed_regen = regeneration.cleanup(db, days=args.days)
    print(f"{OK} Cleaned up {removed_regen} old regeneration queue records")
    if args.show_status:
        _print_queue_stats(db, None)
    return 0


def cmd_lock_status(db: Session, orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    _heading("Sync Lock Status")
    tenants = [args.tenant_id] if args.tenant_id else configured_tenants(db)
    if not tenants:
        print("No tenants found with compliance credentials.")
        return 0
    for tenant_id in tenants:
        info = orchestrator.locks.lock_info(tenant_id)
        print(f"Tenant ID {tenant_id}: {'LOCKED' if info else 'UNLOCKED'}")
        if info is not None and args.tenant_id:
            print("Lock details:")
            print(f"  Operation: {info.operation}")
            print(f"  Holder: {info.holder or 'unknown'}")
            print(f"  PID: {info.pid if info.pid is not None else 'unknown'}")
            print(f"  Acquired: {_fmt(info.acquired_at)}")
            print(f"  Expires: {_fmt(info.expires_at)}")
    return 0


def cmd_release_lock(db: Session, orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    _heading("Releasing Sync Lock")
    if not args.tenant_id:
        print(f"{FAIL} Tenant ID is required for lock release")
        return 2
    if not orchestrator.locks.is_locked(args.tenant_id):
        print(f"Tenant ID {args.tenant_id} is not locked.")
        return 0
    if orchestrator.locks.release(args.tenant_id):
        print(f"{OK} Lock released successfully for tenant ID {args.tenant_id}")
        return 0
    print(f"{FAIL} Failed to release lock for tenant ID {args.tenant_id}")
    return 1


COMMANDS = {
    "process-queue": (cmd_process_queue, "Process pending completion queue items"),
    "regenerate": (cmd_regenerate, "Regenerate (or queue regeneration of) snapshot data"),
    "status": (cmd_status, "Show sync status"),
    "cleanup": (cmd_cleanup, "Delete old completed/failed queue records"),
    "lock-status": (cmd_lock_status, "Show lock status"),
    "release-lock": (cmd_release_lock, "Release a tenant's sync lock"),
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Compliance sync operations")
    sub = ap.add_subparsers(dest="cmd", required=True)

    for name, (func, help_text) in COMMANDS.items():
        p = sub.add_parser(name, help=help_text)
        p.add_argument(
            "-t",
            "--tenant-id",
            "--company-id",
            dest="tenant_id",
            type=int,
            default=0,
            help="Tenant ID (0 for all tenants)",
        )
        p.add_argument("-l", "--limit", type=int, default=100, help="Max items to process (default: 100)")
        p.add_argument("-d", "--days", type=int, default=30, help="Age cutoff for cleanup (default: 30)")
        p.add_argument("-s", "--status", dest="show_status", action="store_true", help="Show detailed status afterwards")
        if name == "regenerate":
            p.add_argument("-f", "--force", action="store_true", help="Regenerate now instead of queueing")
        else:
            p.set_defaults(force=False)
        p.set_defaults(func=func)
    return ap


def main(
    argv: Optional[List[str]] = None,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
) -> int:
    ns = build_parser().parse_args(argv)

    if session_factory is None:
        from trainsync.database import WriteSessionLocal

        session_factory = WriteSessionLocal

    db = session_factory()
    orchestrator = build_orchestrator(db)
    try:
        if ns.tenant_id and not _tenant_known(db, ns.tenant_id):
            print(f"{FAIL} Tenant ID {ns.tenant_id} not found in compliance credentials.")
            return 2
        return ns.func(db, orchestrator, ns)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        logger.exception("Sync operation failed", extra={"cmd": ns.cmd})
        print(f"{FAIL} {ns.cmd} failed: {exc}")
        return 1
    finally:
        orchestrator.close()
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    sys.exit(main())
