from __future__ import annotations

from datetime import datetime, timedelta, timezone

from trainsync.apps.accounts import models as account_models
from trainsync.apps.training import models
from trainsync.apps.training import services


def _create_user(db) -> account_models.User:
    user = account_models.User(username="learner", email="learner@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _create_course(db, name: str) -> models.Course:
    course = models.Course(fullname=name)
    db.add(course)
    db.commit()
    db.refresh(course)
    return course


def test_record_completion_creates_fact(db_session):
    user = _create_user(db_session)
    course = _create_course(db_session, "Security Awareness")
    now = datetime(2026, 2, 1, 10, 0, tzinfo=timezone.utc)

    fact, changed = services.record_completion(db_session, user_id=user.id, course_id=course.id, now=now)
    db_session.commit()

    assert changed is True
    assert fact.status == models.CompletionStatus.COMPLETED
    stored = services.get_completion(db_session, user_id=user.id, course_id=course.id)
    assert stored is not None
    assert stored.completion_date.replace(tzinfo=timezone.utc) == now


def test_record_completion_keeps_original_date(db_session):
    user = _create_user(db_session)
    course = _create_course(db_session, "Phishing 101")
    first = datetime(2026, 2, 1, 10, 0, tzinfo=timezone.utc)

    services.record_completion(db_session, user_id=user.id, course_id=course.id, now=first)
    db_session.commit()
    fact, changed = services.record_completion(
        db_session, user_id=user.id, course_id=course.id, now=first + timedelta(days=3)
    )

    assert changed is False
    assert fact.completion_date.replace(tzinfo=timezone.utc) == first
    assert db_session.query(models.CompletionFact).count() == 1


def test_record_completion_promotes_in_progress_fact(db_session):
    user = _create_user(db_session)
    course = _create_course(db_session, "Data Handling")
    db_session.add(
        models.CompletionFact(user_id=user.id, course_id=course.id, status=models.CompletionStatus.IN_PROGRESS)
    )
    db_session.commit()

    fact, changed = services.record_completion(db_session, user_id=user.id, course_id=course.id)

    assert changed is True
    assert fact.status == models.CompletionStatus.COMPLETED
    assert fact.completion_date is not None


def test_completed_course_ids_ignores_unfinished(db_session):
    user = _create_user(db_session)
    done = _create_course(db_session, "Done")
    pending = _create_course(db_session, "Pending")
    services.record_completion(db_session, user_id=user.id, course_id=done.id)
    db_session.add(
        models.CompletionFact(user_id=user.id, course_id=pending.id, status=models.CompletionStatus.IN_PROGRESS)
    )
    db_session.commit()

    assert services.completed_course_ids(db_session, user_id=user.id, course_ids=[done.id, pending.id]) == {done.id}
    assert services.completed_course_ids(db_session, user_id=user.id, course_ids=[]) == set()
