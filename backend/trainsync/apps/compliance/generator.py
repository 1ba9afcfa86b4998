"""
Builds a tenant's full set of compliance records from completion facts.

Facts are read in fixed-size pages and formatted as they stream past, so the
database result sets held at any moment are bounded by the page size.
``iter_records`` yields records lazily; ``generate`` collects them into the
list a snapshot is written from, so the formatted records themselves are held
in full.

* ANY mode: every completed fact for a rule course, one paged pass.
* ALL mode: a grouped ``COUNT(DISTINCT course_id) >= n`` query pages through
  the qualifying users, then each page of users has its rule-course facts
  fetched.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from trainsync.apps.accounts import models as account_models
from trainsync.apps.training import models as training_models

from . import attempt_log, config, models
from .memory import MemoryGuard
from .schemas import CompletionRef, FormattedRecord

logger = logging.getLogger(__name__)

Fact = training_models.CompletionFact
Course = training_models.Course
User = account_models.User
Membership = account_models.TenantMembership

Row = Tuple[Fact, Optional[User], Optional[Course]]


def _iso(value: Optional[datetime]) -> str:
    value = models.as_utc(value)
    if value is None:
        return ""
    return value.replace(microsecond=0).isoformat()


class DataGenerator:
    def __init__(
        self,
        db: Session,
        *,
        batch_size: Optional[int] = None,
        memory_guard: Optional[MemoryGuard] = None,
        default_framework: Optional[str] = None,
        default_due_days: Optional[int] = None,
        base_url: Optional[str] = None,
        course_url_template: Optional[str] = None,
    ) -> None:
        self.db = db
        self.batch_size = max(int(batch_size or config.BATCH_SIZE), 1)
        self.memory_guard = memory_guard or MemoryGuard()
        self.default_framework = default_framework or config.DEFAULT_FRAMEWORK
        self.default_due_days = config.DEFAULT_DUE_DAYS if default_due_days is None else default_due_days
        self.base_url = (base_url or config.PLATFORM_BASE_URL).rstrip("/")
        self.course_url_template = course_url_template or config.COURSE_URL_TEMPLATE
        self.last_stats: dict = {}

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def frameworks_for(self, rule: models.SyncRule) -> List[str]:
        return rule.framework_list or [self.default_framework]

    def due_date_for(self, course: Course) -> Optional[datetime]:
        if course.due_at is not None:
            return course.due_at
        if course.created_at is None:
            return None
        return models.as_utc(course.created_at) + timedelta(days=self.default_due_days)

    def format_record(self, fact: Fact, user: User, course: Course, frameworks: List[str]) -> FormattedRecord:
        completed_at = fact.completion_date or fact.updated_at
        return FormattedRecord(
            display_name=course.fullname,
            unique_id=f"user{fact.user_id}_course{fact.course_id}",
            external_url=self.course_url_template.format(base_url=self.base_url, course_id=fact.course_id),
            training_id=f"course_{fact.course_id}",
            training_name=course.fullname,
            frameworks_fulfilled=list(frameworks),
            trainee_name=user.full_name,
            trainee_account=user.username or f"user{fact.user_id}",
            trainee_email=user.email or "",
            status="COMPLETE",
            created_ts=_iso(course.created_at),
            due_ts=_iso(self.due_date_for(course)),
            completed_ts=_iso(completed_at),
        )

    def _format_rows(self, rows: Iterable[Row], frameworks: List[str]) -> Iterator[FormattedRecord]:
        for fact, user, course in rows:
            if user is None or course is None:
                logger.warning(
                    "Skipping completion with missing %s",
                    "user" if user is None else "course",
                    extra={"user_id": fact.user_id, "course_id": fact.course_id},
                )
                continue
            yield self.format_record(fact, user, course, frameworks)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _fact_rows(self):
        return (
            self.db.query(Fact, User, Course)
            .outerjoin(User, User.id == Fact.user_id)
            .outerjoin(Course, Course.id == Fact.course_id)
            .filter(Fact.status == training_models.CompletionStatus.COMPLETED)
        )

    def _any_batch(self, tenant_id: int, course_ids: List[int], offset: int) -> List[Row]:
        return (
            self._fact_rows()
            .join(Membership, Membership.user_id == Fact.user_id)
            .filter(Membership.tenant_id == tenant_id, Fact.course_id.in_(course_ids))
            .order_by(Fact.user_id.asc(), Fact.course_id.asc())
            .offset(offset)
            .limit(self.batch_size)
            .all()
        )

    def _qualified_users(self, tenant_id: int, course_ids: List[int]):
        """Members of the tenant who completed every one of ``course_ids``."""
        return (
            self.db.query(Fact.user_id)
            .join(Membership, Membership.user_id == Fact.user_id)
            .filter(
                Membership.tenant_id == tenant_id,
                Fact.course_id.in_(course_ids),
                Fact.status == training_models.CompletionStatus.COMPLETED,
            )
            .group_by(Fact.user_id)
            .having(func.count(func.distinct(Fact.course_id)) >= len(course_ids))
        )

    def _qualified_users_batch(self, tenant_id: int, course_ids: List[int], offset: int) -> List[int]:
        rows = (
            self._qualified_users(tenant_id, course_ids)
            .order_by(Fact.user_id.asc())
            .offset(offset)
            .limit(self.batch_size)
            .all()
        )
        return [int(row[0]) for row in rows]

    def eligible_user_ids(self, tenant_id: int, rule: models.SyncRule, user_ids: List[int]) -> set[int]:
        if not user_ids:
            return set()
        if rule.completion_mode == models.CompletionMode.ALL:
            query = self._qualified_users(tenant_id, rule.course_ids).filter(Fact.user_id.in_(user_ids))
        else:
            query = self.db.query(Membership.user_id).filter(
                Membership.tenant_id == tenant_id,
                Membership.user_id.in_(user_ids),
            )
        return {int(row[0]) for row in query.all()}

    def _user_rows(self, user_ids: List[int], course_ids: List[int]) -> List[Row]:
        return (
            self._fact_rows()
            .filter(Fact.user_id.in_(user_ids), Fact.course_id.in_(course_ids))
            .order_by(Fact.user_id.asc(), Fact.course_id.asc())
            .all()
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def iter_records(self, tenant_id: int, rule: models.SyncRule) -> Iterator[FormattedRecord]:
        course_ids = rule.course_ids
        if not course_ids:
            return
        frameworks = self.frameworks_for(rule)
        all_mode = rule.completion_mode == models.CompletionMode.ALL
        offset = 0
        batch_number = 0
        self.last_stats["batches"] = 0

        with self.memory_guard:
            while True:
                self.memory_guard.check(batch_number)
                if all_mode:
                    user_ids = self._qualified_users_batch(tenant_id, course_ids, offset)
                    fetched = len(user_ids)
                    rows = self._user_rows(user_ids, course_ids) if user_ids else []
                else:
                    rows = self._any_batch(tenant_id, course_ids, offset)
                    fetched = len(rows)

                yield from self._format_rows(rows, frameworks)

                batch_number += 1
                self.last_stats["batches"] = batch_number
                offset += self.batch_size
                if fetched < self.batch_size:
                    break

    def generate(self, tenant_id: int, rule: models.SyncRule) -> List[FormattedRecord]:
        started = time.monotonic()
        self.last_stats = {"batch_size": self.batch_size, "batches": 0}
        records = list(self.iter_records(tenant_id, rule))
        duration = round(time.monotonic() - started, 2)
        self.last_stats.update(
            {
                "duration_sec": duration,
                "record_count": len(records),
                "peak_memory_bytes": self.memory_guard.peak_bytes,
                "completion_mode": rule.completion_mode.value,
            }
        )
        attempt_log.log_sync_attempt(
            self.db,
            tenant_id=tenant_id,
            status=models.AttemptStatus.INFO,
            error_message=f"Data generation performance: {duration}s, {len(records)} records",
        )
        return records

    def format_refs(
        self,
        tenant_id: int,
        rule: models.SyncRule,
        refs: Iterable[CompletionRef],
    ) -> List[FormattedRecord]:
        """
        Format explicit (user, course) references.

        Only users eligible under the tenant's rule are kept: members of the
        tenant, and in ALL mode only those who completed every rule course.
        Other references are skipped with a log line, as are references to a
        course outside the rule or to missing rows.
        """
        course_ids = set(rule.course_ids)
        frameworks = self.frameworks_for(rule)
        records: List[FormattedRecord] = []

        unique: List[CompletionRef] = []
        seen: set[Tuple[int, int]] = set()
        for ref in refs:
            key = (ref.user_id, ref.course_id)
            if key not in seen:
                seen.add(key)
                unique.append(ref)
        eligible = self.eligible_user_ids(tenant_id, rule, sorted({ref.user_id for ref in unique}))

        for ref in unique:
            if ref.user_id not in eligible:
                logger.info(
                    "Skipping completion for user not eligible under the tenant's sync rule",
                    extra={"tenant_id": tenant_id, "user_id": ref.user_id, "course_id": ref.course_id},
                )
                continue
            if ref.course_id not in course_ids:
                logger.info(
                    "Skipping completion for course outside the sync rule",
                    extra={"tenant_id": tenant_id, "user_id": ref.user_id, "course_id": ref.course_id},
                )
                continue
            row = (
                self._fact_rows()
                .filter(Fact.user_id == ref.user_id, Fact.course_id == ref.course_id)
                .first()
            )
            if row is None:
                logger.warning(
                    "Skipping completion with no completed fact",
                    extra={"tenant_id": tenant_id, "user_id": ref.user_id, "course_id": ref.course_id},
                )
                continue
            records.extend(self._format_rows([row], frameworks))
        return records
