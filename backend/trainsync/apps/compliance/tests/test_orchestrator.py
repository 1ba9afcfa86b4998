from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from trainsync.apps.accounts import models as account_models
from trainsync.apps.compliance import completion_queue, models, regeneration
from trainsync.apps.compliance.errors import SnapshotError
from trainsync.apps.compliance.memory import MemoryGuard
from trainsync.apps.compliance.schemas import CompletionRef, CompletionRefBatch, FormattedBatch
from trainsync.apps.training import models as training_models


def _statuses(db) -> list[str]:
    return [row.status for row in db.query(models.SyncAttemptLog).order_by(models.SyncAttemptLog.id.asc()).all()]


def _logs(db, status: str) -> list[models.SyncAttemptLog]:
    return (
        db.query(models.SyncAttemptLog)
        .filter(models.SyncAttemptLog.status == status)
        .order_by(models.SyncAttemptLog.id.asc())
        .all()
    )


@pytest.fixture()
def setup(tenant, make_user, make_course, configure):
    course = make_course("Security Awareness")
    alice = make_user(tenant.id, "alice")
    bob = make_user(tenant.id, "bob")
    configure(tenant.id, [course.id])
    return tenant, course, alice, bob


def test_completion_regenerates_and_pushes(db_session, build, fake_api, setup):
    tenant, course, alice, _ = setup
    orchestrator = build()

    assert orchestrator.on_course_completed(alice.id, course.id) is True

    assert [item["uniqueId"] for item in fake_api.last_resources] == [f"user{alice.id}_course{course.id}"]
    success = _logs(db_session, "success")
    assert len(success) == 1
    assert orchestrator.locks.is_locked(tenant.id) is False
    snapshot = orchestrator.store.load(tenant.id)
    assert [record.unique_id for record in snapshot.records] == [f"user{alice.id}_course{course.id}"]
    fact = db_session.query(training_models.CompletionFact).one()
    assert fact.status == training_models.CompletionStatus.COMPLETED


def test_each_push_carries_full_snapshot(db_session, build, fake_api, setup):
    _, course, alice, bob = setup
    orchestrator = build()

    orchestrator.on_course_completed(alice.id, course.id)
    orchestrator.on_course_completed(bob.id, course.id)

    assert len(fake_api.puts) == 2
    assert sorted(item["uniqueId"] for item in fake_api.last_resources) == sorted(
        [f"user{alice.id}_course{course.id}", f"user{bob.id}_course{course.id}"]
    )


def test_locked_tenant_queues_completion(db_session, build, fake_api, setup):
    tenant, course, alice, _ = setup
    orchestrator = build()
    orchestrator.locks.try_acquire(tenant.id, "data_regeneration")

    assert orchestrator.on_course_completed(alice.id, course.id) is True

    assert fake_api.puts == []
    item = db_session.query(models.SyncQueueItem).one()
    assert item.status == models.QueueStatus.PENDING
    assert item.reason == "sync_locked"
    assert _statuses(db_session)[-1] == "queued"
    assert orchestrator.store.load(tenant.id) is None


def test_lost_lock_race_queues_completion(db_session, build, fake_api, setup, monkeypatch):
    tenant, course, alice, _ = setup
    orchestrator = build()
    monkeypatch.setattr(orchestrator.locks, "try_acquire", lambda tenant_id, operation="sync": False)

    orchestrator.on_course_completed(alice.id, course.id)

    item = db_session.query(models.SyncQueueItem).one()
    assert item.reason == "lock_acquisition_failed"
    assert fake_api.puts == []


def test_pending_regeneration_defers_to_sweep(db_session, build, fake_api, setup):
    tenant, course, alice, _ = setup
    regeneration.request_regeneration(db_session, tenant_id=tenant.id, reason="rule_change")
    orchestrator = build()

    assert orchestrator.on_course_completed(alice.id, course.id) is True

    assert fake_api.puts == []
    assert "pending regeneration" in _logs(db_session, "info")[-1].error_message


def test_unconfigured_course_is_skipped(db_session, build, fake_api, setup, make_course):
    _, _, alice, _ = setup
    other = make_course("Not in rule")
    orchestrator = build()

    assert orchestrator.on_course_completed(alice.id, other.id) is True

    assert fake_api.puts == []
    assert _logs(db_session, "skipped")[0].error_message == "Course not included in the training sync rule"


def test_user_without_tenant_logs_error(db_session, build, fake_api, setup):
    _, course, _, _ = setup
    orchestrator = build()

    assert orchestrator.on_course_completed(999, course.id) is False

    error = _logs(db_session, "error")[0]
    assert error.tenant_id is None
    assert "not associated with any tenant" in error.error_message
    assert fake_api.puts == []


def test_push_failure_logs_error_and_releases_lock(db_session, build, fake_api, setup):
    tenant, course, alice, _ = setup
    fake_api.put_response = httpx.Response(500, json={"error": "server_error"})
    orchestrator = build()

    assert orchestrator.on_course_completed(alice.id, course.id) is False

    assert _statuses(db_session)[-1] == "error"
    assert orchestrator.locks.is_locked(tenant.id) is False


def test_memory_ceiling_releases_lock(db_session, build, fake_api, setup):
    tenant, course, alice, _ = setup
    guard = MemoryGuard(limit_mb=10, check_every=1, usage=lambda: 50 * 1024 * 1024)
    orchestrator = build(memory_guard=guard)

    assert orchestrator.on_course_completed(alice.id, course.id) is False

    assert orchestrator.locks.is_locked(tenant.id) is False
    assert "Memory usage too high" in _logs(db_session, "error")[-1].error_message
    assert fake_api.puts == []


def test_process_queue_syncs_each_tenant_once(db_session, build, fake_api, setup, complete):
    tenant, course, alice, bob = setup
    complete(alice.id, course.id)
    complete(bob.id, course.id)
    completion_queue.enqueue(db_session, user_id=alice.id, course_id=course.id, tenant_id=tenant.id)
    completion_queue.enqueue(db_session, user_id=bob.id, course_id=course.id, tenant_id=tenant.id)
    orchestrator = build()

    result = orchestrator.process_queue(tenant.id)

    assert result.processed == 2
    assert result.successful == 2
    assert len(fake_api.puts) == 1
    assert len(fake_api.last_resources) == 2


def test_sweep_fails_queue_item_after_three_attempts(db_session, build, fake_api, setup, complete):
    tenant, course, alice, _ = setup
    complete(alice.id, course.id)
    completion_queue.enqueue(db_session, user_id=alice.id, course_id=course.id, tenant_id=tenant.id)
    fake_api.put_response = httpx.Response(503, json={"error": "unavailable"})
    orchestrator = build()

    for _ in range(3):
        orchestrator.run_sweep()
    item = db_session.query(models.SyncQueueItem).one()
    db_session.refresh(item)
    assert item.status == models.QueueStatus.FAILED
    assert item.attempts == 3

    puts_before = len(fake_api.puts)
    summary = orchestrator.run_sweep()
    assert summary.queue.processed == 0
    assert len(fake_api.puts) == puts_before


def test_sweep_skips_locked_tenants(db_session, build, fake_api, setup, complete):
    tenant, course, alice, _ = setup
    complete(alice.id, course.id)
    completion_queue.enqueue(db_session, user_id=alice.id, course_id=course.id, tenant_id=tenant.id)
    orchestrator = build()
    orchestrator.locks.try_acquire(tenant.id, "manual_sync")

    summary = orchestrator.run_sweep()

    assert summary.locked_tenants == [tenant.id]
    assert completion_queue.queue_stats(db_session, tenant.id).pending == 1


def test_sweep_processes_regeneration_then_pushes(db_session, build, fake_api, setup, complete):
    tenant, course, alice, _ = setup
    complete(alice.id, course.id)
    regeneration.request_regeneration(db_session, tenant_id=tenant.id, reason="rule_change")
    orchestrator = build()

    summary = orchestrator.run_sweep()

    assert summary.regeneration.successful == 1
    assert regeneration.has_pending(db_session, tenant.id) is False
    assert [item["uniqueId"] for item in fake_api.last_resources] == [f"user{alice.id}_course{course.id}"]
    assert orchestrator.locks.is_locked(tenant.id) is False


def test_regeneration_without_rule_writes_empty_snapshot(db_session, build, fake_api, tenant):
    orchestrator = build()

    assert orchestrator.regenerate_snapshot(tenant.id) is True

    assert orchestrator.store.load(tenant.id).records == []
    assert orchestrator.push_snapshot(tenant.id) is True
    assert fake_api.puts == []
    assert _statuses(db_session)[-1] == "warning"


def test_forced_regeneration_respects_lock(db_session, build, setup):
    tenant, _, _, _ = setup
    orchestrator = build()
    orchestrator.locks.try_acquire(tenant.id)

    assert orchestrator.trigger_regeneration(tenant.id, force_immediate=True) is False

    orchestrator.locks.release(tenant.id)
    assert orchestrator.trigger_regeneration(tenant.id, force_immediate=True) is True
    assert orchestrator.trigger_regeneration(tenant.id) is True
    assert regeneration.status(db_session, tenant.id).reason == "manual_trigger"


def test_sync_payload_merges_into_snapshot(db_session, build, fake_api, setup, complete):
    tenant, course, alice, bob = setup
    complete(alice.id, course.id)
    orchestrator = build()
    orchestrator.regenerate_snapshot(tenant.id)
    complete(bob.id, course.id)

    ok = orchestrator.sync_payload(
        tenant.id, CompletionRefBatch(refs=[CompletionRef(user_id=bob.id, course_id=course.id)])
    )

    assert ok is True
    assert sorted(item["uniqueId"] for item in fake_api.last_resources) == sorted(
        [f"user{alice.id}_course{course.id}", f"user{bob.id}_course{course.id}"]
    )
    assert orchestrator.store.load(tenant.id).record_count == 2


def test_sync_payload_accepts_formatted_records(db_session, build, fake_api, setup, complete):
    tenant, course, alice, _ = setup
    complete(alice.id, course.id)
    orchestrator = build()
    record = orchestrator.generator.generate(tenant.id, orchestrator._require_rule(tenant.id))[0]
    renamed = record.model_copy(update={"display_name": "Renamed"})

    assert orchestrator.sync_payload(tenant.id, FormattedBatch(records=[renamed])) is True

    assert [item["displayName"] for item in fake_api.last_resources] == ["Renamed"]


def test_empty_ref_batch_is_rejected(db_session, build, fake_api, setup):
    tenant, course, _, _ = setup
    orchestrator = build()

    batch = CompletionRefBatch(refs=[CompletionRef(user_id=999, course_id=course.id)])

    assert orchestrator.sync_payload(tenant.id, batch) is False
    assert fake_api.puts == []


def test_manual_full_sync_course(db_session, build, fake_api, setup, complete):
    tenant, course, alice, bob = setup
    complete(alice.id, course.id)
    complete(bob.id, course.id)
    orchestrator = build()

    assert orchestrator.manual_full_sync_course(tenant.id, course.id) is True

    assert len(fake_api.last_resources) == 2
    assert "Manual full sync completed successfully for 2 users" in _logs(db_session, "success")[-1].error_message


def test_status_reports_lock_queue_and_snapshot(db_session, build, setup, complete):
    tenant, course, alice, _ = setup
    complete(alice.id, course.id)
    orchestrator = build()
    orchestrator.regenerate_snapshot(tenant.id)
    completion_queue.enqueue(db_session, user_id=alice.id, course_id=course.id, tenant_id=tenant.id)
    orchestrator.locks.try_acquire(tenant.id, "manual_sync")

    status = orchestrator.status(tenant.id)

    assert status.locked is True
    assert status.lock.operation == "manual_sync"
    assert status.queue.pending == 1
    assert status.snapshot.record_count == 1


def _second_tenant(db, name: str = "Globex Ltd"):
    other = account_models.Tenant(name=name)
    db.add(other)
    db.commit()
    db.refresh(other)
    return other


def _old_completed_queue_row(db, clock, tenant_id: int) -> None:
    stamp = clock() - timedelta(days=60)
    db.add(
        models.SyncQueueItem(
            user_id=1,
            course_id=1,
            tenant_id=tenant_id,
            status=models.QueueStatus.COMPLETED,
            queued_at=stamp,
            processed_at=stamp,
        )
    )
    db.commit()


def test_manual_full_sync_course_excludes_other_tenants(db_session, build, fake_api, setup, complete, make_user):
    tenant, course, alice, _ = setup
    other = _second_tenant(db_session)
    outsider = make_user(other.id, "outsider")
    complete(alice.id, course.id)
    complete(outsider.id, course.id)
    orchestrator = build()

    assert orchestrator.manual_full_sync_course(tenant.id, course.id) is True

    assert [item["uniqueId"] for item in fake_api.last_resources] == [f"user{alice.id}_course{course.id}"]
    assert [r.unique_id for r in orchestrator.store.load(tenant.id).records] == [f"user{alice.id}_course{course.id}"]


def test_ref_batch_drops_users_of_other_tenants(db_session, build, fake_api, setup, complete, make_user):
    tenant, course, alice, _ = setup
    other = _second_tenant(db_session)
    outsider = make_user(other.id, "outsider")
    complete(alice.id, course.id)
    complete(outsider.id, course.id)
    orchestrator = build()

    batch = CompletionRefBatch(
        refs=[
            CompletionRef(user_id=alice.id, course_id=course.id),
            CompletionRef(user_id=outsider.id, course_id=course.id),
        ]
    )

    assert orchestrator.sync_payload(tenant.id, batch) is True
    assert [item["uniqueId"] for item in fake_api.last_resources] == [f"user{alice.id}_course{course.id}"]


def test_manual_full_sync_course_applies_all_mode(db_session, build, fake_api, tenant, make_user, make_course, complete, configure):
    first = make_course("Security Awareness")
    second = make_course("Data Handling")
    partial = make_user(tenant.id, "partial")
    finished = make_user(tenant.id, "finished")
    configure(tenant.id, [first.id, second.id], mode=models.CompletionMode.ALL)
    complete(partial.id, first.id)
    orchestrator = build()

    assert orchestrator.manual_full_sync_course(tenant.id, first.id) is True
    assert fake_api.puts == []

    complete(finished.id, first.id)
    complete(finished.id, second.id)

    assert orchestrator.manual_full_sync_course(tenant.id, first.id) is True
    unique_ids = [item["uniqueId"] for item in fake_api.last_resources]
    assert f"user{partial.id}_course{first.id}" not in unique_ids
    assert f"user{finished.id}_course{first.id}" in unique_ids


def test_sweep_keeps_regeneration_pending_when_lock_is_lost(db_session, build, fake_api, setup, complete, monkeypatch):
    tenant, course, alice, _ = setup
    complete(alice.id, course.id)
    regeneration.request_regeneration(db_session, tenant_id=tenant.id, reason="rule_change")
    orchestrator = build()
    # Free when checked, taken by someone else by the time we try to acquire.
    monkeypatch.setattr(orchestrator.locks, "try_acquire", lambda tenant_id, operation="sync": False)

    summary = orchestrator.run_sweep()

    assert summary.regeneration.failed == 0
    assert summary.regeneration.skipped == 1
    request = regeneration.status(db_session, tenant.id)
    assert request.status == models.RegenerationStatus.PENDING
    assert request.error_message is None
    assert fake_api.puts == []


def test_sweep_push_error_does_not_stop_other_tenants(db_session, build, fake_api, clock, setup, complete, make_user, configure, monkeypatch):
    tenant, course, alice, _ = setup
    other = _second_tenant(db_session)
    carol = make_user(other.id, "carol")
    configure(other.id, [course.id])
    complete(alice.id, course.id)
    complete(carol.id, course.id)
    regeneration.request_regeneration(db_session, tenant_id=tenant.id, reason="rule_change")
    regeneration.request_regeneration(db_session, tenant_id=other.id, reason="rule_change")
    _old_completed_queue_row(db_session, clock, tenant.id)
    orchestrator = build()
    load = orchestrator.store.load

    def _load(tenant_id: int):
        if tenant_id == tenant.id:
            raise SnapshotError("corrupt")
        return load(tenant_id)

    monkeypatch.setattr(orchestrator.store, "load", _load)

    summary = orchestrator.run_sweep()

    assert summary.regeneration.successful == 2
    assert any(error.startswith(f"Tenant {tenant.id}:") for error in summary.regeneration.errors)
    assert regeneration.has_pending(db_session, other.id) is False
    assert [item["uniqueId"] for item in fake_api.last_resources] == [f"user{carol.id}_course{course.id}"]
    assert "Push after snapshot regeneration failed: corrupt" in _logs(db_session, "error")[-1].error_message
    assert orchestrator.locks.is_locked(tenant.id) is False
    assert summary.queue_rows_removed == 1


def test_sweep_still_cleans_up_when_regeneration_processing_raises(db_session, build, clock, setup, monkeypatch):
    tenant, _, _, _ = setup
    _old_completed_queue_row(db_session, clock, tenant.id)
    orchestrator = build()

    def _boom():
        raise RuntimeError("boom")

    monkeypatch.setattr(orchestrator, "process_regenerations", _boom)

    summary = orchestrator.run_sweep()

    assert summary.regeneration.errors == ["Regeneration processing: boom"]
    assert summary.queue_rows_removed == 1
