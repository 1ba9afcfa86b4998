from __future__ import annotations

import tracemalloc
from datetime import datetime, timezone

import pydantic
import pytest

from trainsync.apps.compliance import models
from trainsync.apps.compliance.errors import MemoryCeilingExceeded
from trainsync.apps.compliance.generator import DataGenerator
from trainsync.apps.compliance.memory import MemoryGuard
from trainsync.apps.compliance.schemas import CompletionRef, FormattedRecord


def _generator(db, **kwargs) -> DataGenerator:
    kwargs.setdefault("batch_size", 2)
    kwargs.setdefault("memory_guard", MemoryGuard(limit_mb=0))
    return DataGenerator(db, base_url="https://lms.test", **kwargs)


def _ids(records) -> list[str]:
    return sorted(record.unique_id for record in records)


@pytest.fixture()
def two_course_tenant(tenant, make_user, make_course, complete):
    c10 = make_course("Security Awareness")
    c11 = make_course("Phishing 101")
    only_first = make_user(tenant.id, "alice")
    both = make_user(tenant.id, "bob")
    complete(only_first.id, c10.id)
    complete(both.id, c10.id)
    complete(both.id, c11.id)
    return tenant, c10, c11, only_first, both


def test_any_mode_includes_partial_completers(db_session, configure, two_course_tenant):
    tenant, c10, c11, only_first, both = two_course_tenant
    rule = configure(tenant.id, [c10.id, c11.id], mode=models.CompletionMode.ANY)

    records = _generator(db_session).generate(tenant.id, rule)

    assert _ids(records) == sorted(
        [
            f"user{only_first.id}_course{c10.id}",
            f"user{both.id}_course{c10.id}",
            f"user{both.id}_course{c11.id}",
        ]
    )


def test_all_mode_requires_every_course(db_session, configure, two_course_tenant):
    tenant, c10, c11, only_first, both = two_course_tenant
    rule = configure(tenant.id, [c10.id, c11.id], mode=models.CompletionMode.ALL)

    records = _generator(db_session).generate(tenant.id, rule)

    assert _ids(records) == sorted([f"user{both.id}_course{c10.id}", f"user{both.id}_course{c11.id}"])
    assert all(f"user{only_first.id}_" not in record.unique_id for record in records)


def test_all_mode_pages_through_many_users(db_session, tenant, make_user, make_course, complete, configure):
    c10 = make_course("A")
    c11 = make_course("B")
    users = [make_user(tenant.id, f"user{i}") for i in range(5)]
    for user in users:
        complete(user.id, c10.id)
        complete(user.id, c11.id)
    rule = configure(tenant.id, [c10.id, c11.id], mode=models.CompletionMode.ALL)
    generator = _generator(db_session, batch_size=2)

    records = generator.generate(tenant.id, rule)

    assert len(records) == 10
    assert generator.last_stats["batches"] == 3


def test_other_tenants_are_excluded(db_session, tenant, make_user, make_course, complete, configure):
    from trainsync.apps.accounts import models as account_models

    other = account_models.Tenant(name="Other Co")
    db_session.add(other)
    db_session.commit()
    course = make_course("Shared Course")
    mine = make_user(tenant.id, "mine")
    theirs = make_user(other.id, "theirs")
    complete(mine.id, course.id)
    complete(theirs.id, course.id)
    rule = configure(tenant.id, [course.id])

    records = _generator(db_session).generate(tenant.id, rule)

    assert _ids(records) == [f"user{mine.id}_course{course.id}"]


def test_record_format_and_defaults(db_session, tenant, make_user, make_course, complete, configure):
    course = make_course("Security Awareness", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    user = make_user(tenant.id, "alice", first_name="Alice", last_name="Tester")
    complete(user.id, course.id, datetime(2026, 2, 1, 12, 0, 30, 123456, tzinfo=timezone.utc))
    rule = configure(tenant.id, [course.id], frameworks=" , ")

    (record,) = _generator(db_session).generate(tenant.id, rule)
    wire = record.to_wire()

    assert wire["uniqueId"] == f"user{user.id}_course{course.id}"
    assert wire["trainingId"] == f"course_{course.id}"
    assert wire["displayName"] == "Security Awareness"
    assert wire["frameworksFulfilled"] == ["SOC2"]
    assert wire["traineeFullName"] == "Alice Tester"
    assert wire["traineeAccountName"] == "alice"
    assert wire["traineeEmail"] == "alice@example.com"
    assert wire["status"] == "COMPLETE"
    assert wire["externalUrl"] == f"https://lms.test/course/view.php?id={course.id}"
    assert wire["trainingCreatedTimestamp"] == "2026-01-01T00:00:00+00:00"
    assert wire["trainingDueTimestamp"] == "2026-01-31T00:00:00+00:00"
    assert wire["trainingCompletedTimestamp"] == "2026-02-01T12:00:30+00:00"


def test_explicit_due_date_and_frameworks(db_session, tenant, make_user, make_course, complete, configure):
    course = make_course("Course", due_at=datetime(2026, 6, 30, tzinfo=timezone.utc))
    user = make_user(tenant.id, "alice")
    complete(user.id, course.id)
    rule = configure(tenant.id, [course.id], frameworks="ISO27001,HIPAA")

    (record,) = _generator(db_session, default_framework="SOC2").generate(tenant.id, rule)

    assert record.due_ts == "2026-06-30T00:00:00+00:00"
    assert record.frameworks_fulfilled == ["ISO27001", "HIPAA"]


def test_rule_without_courses_generates_nothing(db_session, tenant, configure):
    rule = configure(tenant.id, [])

    assert _generator(db_session).generate(tenant.id, rule) == []


def test_generation_logs_performance(db_session, tenant, configure):
    rule = configure(tenant.id, [1])

    _generator(db_session).generate(tenant.id, rule)

    row = db_session.query(models.SyncAttemptLog).one()
    assert row.status == "info"
    assert row.error_message.startswith("Data generation performance:")


def test_memory_guard_aborts_when_gc_does_not_help(db_session, configure, two_course_tenant):
    tenant, c10, c11, _, _ = two_course_tenant
    rule = configure(tenant.id, [c10.id, c11.id])
    guard = MemoryGuard(limit_mb=100, threshold=0.8, check_every=1, usage=lambda: 90 * 1024 * 1024)

    with pytest.raises(MemoryCeilingExceeded):
        _generator(db_session, memory_guard=guard).generate(tenant.id, rule)


def test_memory_guard_recovers_after_gc():
    readings = iter([90 * 1024 * 1024, 10 * 1024 * 1024])
    guard = MemoryGuard(limit_mb=100, threshold=0.8, check_every=1, usage=lambda: next(readings))

    guard.check(0)

    assert guard.peak_bytes == 90 * 1024 * 1024


def test_memory_guard_only_checks_every_n_batches():
    calls: list[int] = []

    def _usage() -> int:
        calls.append(1)
        return 0

    guard = MemoryGuard(limit_mb=100, check_every=10, usage=_usage)
    for batch in range(25):
        guard.check(batch)

    assert len(calls) == 3


def test_format_refs_skips_outside_rule_and_missing(db_session, tenant, make_user, make_course, complete, configure):
    in_rule = make_course("In rule")
    outside = make_course("Outside")
    user = make_user(tenant.id, "alice")
    complete(user.id, in_rule.id)
    complete(user.id, outside.id)
    rule = configure(tenant.id, [in_rule.id])
    refs = [
        CompletionRef(user_id=user.id, course_id=in_rule.id),
        CompletionRef(user_id=user.id, course_id=in_rule.id),
        CompletionRef(user_id=user.id, course_id=outside.id),
        CompletionRef(user_id=999, course_id=in_rule.id),
    ]

    records = _generator(db_session).format_refs(tenant.id, rule, refs)

    assert _ids(records) == [f"user{user.id}_course{in_rule.id}"]


def test_formatted_record_accepts_field_names_and_is_immutable():
    record = FormattedRecord(
        display_name="Security Awareness - Ada Lovelace",
        unique_id="user1_course10",
        external_url="https://lms.test/course/view.php?id=10",
        training_id="10",
        training_name="Security Awareness",
        frameworks_fulfilled=["SOC2"],
        trainee_name="Ada Lovelace",
        trainee_account="ada",
        trainee_email="ada@example.com",
        created_ts="2026-01-01T00:00:00Z",
        due_ts="",
        completed_ts="2026-02-01T12:00:00Z",
    )

    wire = record.to_wire()
    assert wire["uniqueId"] == "user1_course10"
    assert wire["traineeFullName"] == "Ada Lovelace"
    assert wire["status"] == "COMPLETE"
    assert FormattedRecord(**wire) == record

    with pytest.raises(pydantic.ValidationError):
        record.unique_id = "user2_course10"


def test_memory_guard_counts_only_allocations_traced_inside_it():
    if tracemalloc.is_tracing():
        pytest.skip("tracemalloc already started by the test run")
    before = [bytearray(1024) for _ in range(256)]
    guard = MemoryGuard(limit_mb=100, check_every=1)

    with guard:
        assert tracemalloc.is_tracing()
        assert guard.current_usage() < 256 * 1024
        inside = bytearray(512 * 1024)
        assert guard.current_usage() >= 512 * 1024

    assert not tracemalloc.is_tracing()
    assert guard.peak_bytes >= 512 * 1024
    assert len(before) == 256 and len(inside) == 512 * 1024
