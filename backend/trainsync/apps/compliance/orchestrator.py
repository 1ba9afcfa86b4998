"""
Ties locks, queues, generation and the remote client together.

Two ingress paths:

* ``on_course_completed(user_id, course_id)`` for a single completion event.
* ``run_sweep()`` for the periodic pass that drains both queues and purges old
  terminal rows.

Every snapshot regeneration and push for a tenant happens while holding that
tenant's lock, so two pushes for the same tenant never overlap. Lock
contention is routed to the completion queue, never treated as an error.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from trainsync.apps.accounts import models as account_models
from trainsync.apps.accounts import services as account_services
from trainsync.apps.training import models as training_models
from trainsync.apps.training import services as training_services

from . import attempt_log, completion_queue, config, models, regeneration
from . import rules as rule_services
from .client import RemoteSyncClient
from .errors import ComplianceSyncError, ConfigurationError, LockContended, TenantResolutionError
from .generator import DataGenerator
from .locks import SyncLockManager, build_lock_manager
from .schemas import (
    CompletionRef,
    CompletionRefBatch,
    DrainResult,
    FormattedBatch,
    FormattedRecord,
    RegenerationRequestRead,
    SweepSummary,
    SyncPayload,
    TenantSyncStatus,
)
from .snapshots import SnapshotStore, slug_resolver

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    def __init__(
        self,
        db: Session,
        *,
        locks: Optional[SyncLockManager] = None,
        store: Optional[SnapshotStore] = None,
        generator: Optional[DataGenerator] = None,
        client: Optional[RemoteSyncClient] = None,
        data_dir: Optional[Path] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self._now = now or _utcnow
        self.locks = locks or build_lock_manager(db, data_dir=data_dir, now=self._now)
        self.store = store or SnapshotStore(data_dir, slug_for=slug_resolver(db))
        self.generator = generator or DataGenerator(db)
        self.client = client or RemoteSyncClient(db)

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log(self, tenant_id: Optional[int], status: models.AttemptStatus, message: str, *, user_id: int = 0, course_id: int = 0) -> None:
        attempt_log.log_sync_attempt(
            self.db,
            tenant_id=tenant_id,
            status=status,
            user_id=user_id,
            course_id=course_id,
            error_message=message,
        )

    def _resolve_tenant(self, user_id: int) -> int:
        tenant_id = account_services.resolve_user_tenant_id(self.db, user_id)
        if tenant_id is None:
            raise TenantResolutionError(f"User {user_id} not associated with any tenant")
        return tenant_id

    def _require_rule(self, tenant_id: int) -> models.SyncRule:
        rule = rule_services.get_rule(self.db, tenant_id)
        if rule is None:
            raise ConfigurationError(f"No training sync rule configured for tenant {tenant_id}")
        return rule

    # ------------------------------------------------------------------
    # Snapshot + push
    # ------------------------------------------------------------------

    def regenerate_snapshot(self, tenant_id: int, *, manage_lock: bool = True) -> bool:
        """
        Rebuild and store the tenant's snapshot.

        With ``manage_lock=False`` the caller must already hold the tenant lock.
        A tenant without a rule gets an empty snapshot. Generation errors
        (including ``MemoryCeilingExceeded``) propagate after the lock is
        released.
        """
        if manage_lock and not self.locks.try_acquire(tenant_id, "data_regeneration"):
            logger.info("Regeneration skipped, tenant locked", extra={"tenant_id": tenant_id})
            return False
        try:
            rule = rule_services.get_rule(self.db, tenant_id)
            if rule is None:
                self.store.write(tenant_id, [], generated_at=self._now())
                self._log(tenant_id, models.AttemptStatus.INFO, "No sync rule, regeneration wrote an empty snapshot")
                return True
            records = self.generator.generate(tenant_id, rule)
            self.store.write(
                tenant_id,
                records,
                generated_at=self._now(),
                performance=dict(self.generator.last_stats),
            )
            return True
        finally:
            if manage_lock:
                self.locks.release(tenant_id)

    def push_snapshot(self, tenant_id: int, *, user_id: int = 0, course_id: int = 0) -> bool:
        """Send the stored snapshot. An empty snapshot is a warning, not a failure."""
        snapshot = self.store.load(tenant_id)
        if snapshot is None or not snapshot.records:
            self._log(
                tenant_id,
                models.AttemptStatus.WARNING,
                "No completion data found after regeneration",
                user_id=user_id,
                course_id=course_id,
            )
            return True
        return self.client.push(tenant_id, snapshot.records, user_id=user_id, course_id=course_id)

    def _regenerate_and_push(self, tenant_id: int, *, user_id: int = 0, course_id: int = 0) -> bool:
        if not self.regenerate_snapshot(tenant_id, manage_lock=False):
            self._log(
                tenant_id,
                models.AttemptStatus.ERROR,
                "Failed to regenerate completion data",
                user_id=user_id,
                course_id=course_id,
            )
            return False
        return self.push_snapshot(tenant_id, user_id=user_id, course_id=course_id)

    def sync_tenant(self, tenant_id: int, *, operation: str = "sync", user_id: int = 0, course_id: int = 0) -> bool:
        """Regenerate and push under the tenant lock. Returns False if the lock is held."""
        if not self.locks.try_acquire(tenant_id, operation):
            return False
        try:
            return self._regenerate_and_push(tenant_id, user_id=user_id, course_id=course_id)
        finally:
            self.locks.release(tenant_id)

    # ------------------------------------------------------------------
    # Per-event path
    # ------------------------------------------------------------------

    def handle_course_completion(self, user_id: int, course_id: int) -> bool:
        try:
            tenant_id = self._resolve_tenant(user_id)
        except TenantResolutionError as exc:
            self._log(None, models.AttemptStatus.ERROR, str(exc), user_id=user_id, course_id=course_id)
            return False

        _, changed = training_services.record_completion(
            self.db, user_id=user_id, course_id=course_id, now=self._now()
        )
        self.db.commit()
        if changed:
            self._log(tenant_id, models.AttemptStatus.DEBUG, "Recorded completion", user_id=user_id, course_id=course_id)

        problem = rule_services.configuration_problem(
            self.db, tenant_id=tenant_id, user_id=user_id, course_id=course_id
        )
        if problem:
            self._log(tenant_id, models.AttemptStatus.SKIPPED, problem, user_id=user_id, course_id=course_id)
            return True

        if self.locks.is_locked(tenant_id):
            completion_queue.enqueue(
                self.db, user_id=user_id, course_id=course_id, tenant_id=tenant_id, reason="sync_locked"
            )
            self._log(
                tenant_id,
                models.AttemptStatus.QUEUED,
                "Completion queued due to sync lock",
                user_id=user_id,
                course_id=course_id,
            )
            return True

        if regeneration.has_pending(self.db, tenant_id):
            self._log(
                tenant_id,
                models.AttemptStatus.INFO,
                "Found pending regeneration in queue, skipping individual completion (will be handled by the sweep)",
                user_id=user_id,
                course_id=course_id,
            )
            return True

        if not self.locks.try_acquire(tenant_id, "completion_event"):
            completion_queue.enqueue(
                self.db,
                user_id=user_id,
                course_id=course_id,
                tenant_id=tenant_id,
                reason="lock_acquisition_failed",
            )
            self._log(
                tenant_id,
                models.AttemptStatus.QUEUED,
                "Completion queued - could not acquire lock",
                user_id=user_id,
                course_id=course_id,
            )
            return True

        try:
            return self._regenerate_and_push(tenant_id, user_id=user_id, course_id=course_id)
        except ComplianceSyncError as exc:
            self.db.rollback()
            self._log(
                tenant_id,
                models.AttemptStatus.ERROR,
                f"Completion sync failed: {exc}",
                user_id=user_id,
                course_id=course_id,
            )
            return False
        finally:
            self.locks.release(tenant_id)

    def on_course_completed(self, user_id: int, course_id: int) -> bool:
        """
        Host-platform hook. Never raises: the learner's completion flow must not
        be affected by sync failures.
        """
        try:
            return self.handle_course_completion(user_id, course_id)
        except Exception as exc:  # noqa: BLE001
            self.db.rollback()
            logger.exception(
                "Completion handler raised",
                extra={"user_id": user_id, "course_id": course_id},
            )
            self._log(
                None,
                models.AttemptStatus.ERROR,
                f"Completion handler exception: {exc}",
                user_id=user_id,
                course_id=course_id,
            )
            return False

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def process_queue(self, tenant_id: Optional[int] = None, *, limit: Optional[int] = None) -> DrainResult:
        synced: Dict[int, bool] = {}

        def _process(item: models.SyncQueueItem) -> bool:
            problem = rule_services.configuration_problem(
                self.db, tenant_id=item.tenant_id, user_id=item.user_id, course_id=item.course_id
            )
            if problem:
                self._log(
                    item.tenant_id,
                    models.AttemptStatus.SKIPPED,
                    problem,
                    user_id=item.user_id,
                    course_id=item.course_id,
                )
                return True
            # One full push per tenant covers every item queued before it.
            if synced.get(item.tenant_id):
                return True
            ok = self.sync_tenant(
                item.tenant_id,
                operation="queue_processing",
                user_id=item.user_id,
                course_id=item.course_id,
            )
            synced[item.tenant_id] = ok
            return ok

        return completion_queue.drain(
            self.db,
            process=_process,
            is_locked=self.locks.is_locked,
            tenant_id=tenant_id,
            limit=limit,
            now=self._now(),
        )

    def process_regenerations(self) -> DrainResult:
        return regeneration.drain_pending(
            self.db,
            regenerate=self._regenerate_for_queue,
            after_success=self._push_after_regeneration,
            is_locked=self.locks.is_locked,
            now=self._now,
        )

    def _regenerate_for_queue(self, tenant_id: int) -> bool:
        if not self.locks.try_acquire(tenant_id, "data_regeneration"):
            raise LockContended(tenant_id)
        try:
            return self.regenerate_snapshot(tenant_id, manage_lock=False)
        finally:
            self.locks.release(tenant_id)

    def _push_after_regeneration(self, tenant_id: int) -> bool:
        if not self.locks.try_acquire(tenant_id, "regeneration_push"):
            self._log(tenant_id, models.AttemptStatus.WARNING, "Regenerated snapshot not pushed, tenant locked")
            return False
        try:
            return self.push_snapshot(tenant_id)
        finally:
            self.locks.release(tenant_id)

    def trigger_regeneration(
        self,
        tenant_id: int,
        *,
        force_immediate: bool = False,
        triggered_by: Optional[int] = None,
    ) -> bool:
        if not force_immediate:
            return regeneration.request_regeneration(
                self.db, tenant_id=tenant_id, reason="manual_trigger", triggered_by=triggered_by
            )
        try:
            ok = self.regenerate_snapshot(tenant_id, manage_lock=True)
        except ComplianceSyncError as exc:
            self._log(tenant_id, models.AttemptStatus.ERROR, f"Manual regeneration failed: {exc}")
            return False
        if ok:
            self._log(tenant_id, models.AttemptStatus.INFO, "Manual regeneration completed")
        return ok

    # ------------------------------------------------------------------
    # Explicit payloads
    # ------------------------------------------------------------------

    def sync_payload(self, tenant_id: int, payload: SyncPayload) -> bool:
        """
        Merge an explicit batch into the tenant's snapshot and push the result.

        The batch is never pushed on its own: the remote end would replace the
        tenant's whole resource with it. Records are merged by ``unique_id``
        into the stored snapshot (regenerated first if none exists), and the
        merged set is what gets written and pushed.
        """
        try:
            rule = self._require_rule(tenant_id)
        except ConfigurationError as exc:
            self._log(tenant_id, models.AttemptStatus.ERROR, str(exc))
            return False

        if isinstance(payload, FormattedBatch):
            incoming: List[FormattedRecord] = list(payload.records)
        elif isinstance(payload, CompletionRefBatch):
            incoming = self.generator.format_refs(tenant_id, rule, payload.refs)
        else:
            raise TypeError(f"Unsupported sync payload: {type(payload).__name__}")

        if not incoming:
            self._log(tenant_id, models.AttemptStatus.ERROR, "No completions provided to send")
            return False

        if not self.locks.try_acquire(tenant_id, "manual_sync"):
            self._log(tenant_id, models.AttemptStatus.INFO, "manual sync skipped, tenant locked")
            return False
        try:
            snapshot = self.store.load(tenant_id)
            if snapshot is None:
                self.regenerate_snapshot(tenant_id, manage_lock=False)
                snapshot = self.store.load(tenant_id)
            merged: Dict[str, FormattedRecord] = {}
            for record in (snapshot.records if snapshot else []):
                merged[record.unique_id] = record
            for record in incoming:
                merged[record.unique_id] = record
            self.store.write(tenant_id, merged.values(), generated_at=self._now())
            return self.client.push(tenant_id, list(merged.values()))
        except ComplianceSyncError as exc:
            self.db.rollback()
            self._log(tenant_id, models.AttemptStatus.ERROR, f"manual sync failed: {exc}")
            return False
        finally:
            self.locks.release(tenant_id)

    def manual_full_sync_course(self, tenant_id: int, course_id: int) -> bool:
        """Push every eligible completion of one course, merged into the tenant's snapshot."""
        try:
            rule = self._require_rule(tenant_id)
        except ConfigurationError as exc:
            self._log(tenant_id, models.AttemptStatus.ERROR, str(exc), course_id=course_id)
            return False

        rows = (
            self.db.query(training_models.CompletionFact.user_id)
            .join(
                account_models.TenantMembership,
                account_models.TenantMembership.user_id == training_models.CompletionFact.user_id,
            )
            .filter(
                account_models.TenantMembership.tenant_id == tenant_id,
                training_models.CompletionFact.course_id == course_id,
                training_models.CompletionFact.status == training_models.CompletionStatus.COMPLETED,
            )
            .order_by(training_models.CompletionFact.user_id.asc())
            .all()
        )
        user_ids = [int(row[0]) for row in rows]
        eligible = self.generator.eligible_user_ids(tenant_id, rule, user_ids)
        refs = [CompletionRef(user_id=user_id, course_id=course_id) for user_id in user_ids if user_id in eligible]
        if not refs:
            self._log(tenant_id, models.AttemptStatus.INFO, "No completed users found for manual sync", course_id=course_id)
            return True

        self._log(
            tenant_id,
            models.AttemptStatus.INFO,
            f"Starting manual full sync for course with {len(refs)} completed users",
            course_id=course_id,
        )
        ok = self.sync_payload(tenant_id, CompletionRefBatch(refs=refs))
        if ok:
            self._log(
                tenant_id,
                models.AttemptStatus.SUCCESS,
                f"Manual full sync completed successfully for {len(refs)} users",
                course_id=course_id,
            )
        else:
            self._log(tenant_id, models.AttemptStatus.ERROR, "Manual full sync failed for course", course_id=course_id)
        return ok

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def run_sweep(self, *, limit: Optional[int] = None, retention_days: Optional[int] = None) -> SweepSummary:
        logger.info("Starting compliance sync sweep")
        summary = SweepSummary()
        limit = config.QUEUE_DRAIN_LIMIT if limit is None else limit

        for tenant_id in completion_queue.tenants_with_pending(self.db):
            if self.locks.is_locked(tenant_id):
                logger.info("Sync is locked, skipping queue processing", extra={"tenant_id": tenant_id})
                summary.locked_tenants.append(tenant_id)
                continue
            try:
                result = self.process_queue(tenant_id, limit=limit)
            except Exception as exc:  # noqa: BLE001
                self.db.rollback()
                logger.exception("Queue processing raised", extra={"tenant_id": tenant_id})
                result = DrainResult(errors=[f"Tenant {tenant_id}: {exc}"])
            logger.info(
                "Tenant %s: processed %s, successful %s, failed %s",
                tenant_id,
                result.processed,
                result.successful,
                result.failed,
                extra={"tenant_id": tenant_id},
            )
            summary.queue = summary.queue.merge(result)

        try:
            summary.regeneration = self.process_regenerations()
        except Exception as exc:  # noqa: BLE001
            self.db.rollback()
            logger.exception("Regeneration processing raised")
            summary.regeneration = DrainResult(errors=[f"Regeneration processing: {exc}"])

        now = self._now()
        summary.queue_rows_removed = completion_queue.cleanup(self.db, days=retention_days, now=now)
        summary.regeneration_rows_removed = regeneration.cleanup(self.db, days=retention_days, now=now)

        logger.info(
            "Compliance sync sweep completed",
            extra={
                "queue_processed": summary.queue.processed,
                "regenerations": summary.regeneration.processed,
            },
        )
        return summary

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def status(self, tenant_id: int) -> TenantSyncStatus:
        request = regeneration.status(self.db, tenant_id)
        last = attempt_log.latest_status(self.db, tenant_id)
        lock = self.locks.lock_info(tenant_id)
        return TenantSyncStatus(
            tenant_id=tenant_id,
            locked=lock is not None,
            lock=lock,
            queue=completion_queue.queue_stats(self.db, tenant_id),
            regeneration=RegenerationRequestRead.model_validate(request) if request else None,
            snapshot=self.store.meta(tenant_id),
            last_attempt_status=models.AttemptStatus(last) if last else None,
        )


def build_orchestrator(db: Session, **overrides) -> Orchestrator:
    return Orchestrator(db, **overrides)
