# pm_core/retention/engine.py
"""
Scheduled retention evaluation (`manage.py run_retention`).

One run, in order:
  1. expire legal holds and role assignments whose time has passed
  2. enroll new records from handlers that discover their own (audit batches)
  3. ACTIVE -> ARCHIVED and ARCHIVED -> PENDING_DESTRUCTION per active policy
     (patients who were minors are kept past majority + minor_extension_days;
     records archiving within notify_before_archive_days are announced)
  4. execute approved destructions that are due, and re-evaluate deferred ones

Records covered by an active legal hold are skipped at every step.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Optional

from django.db.models import Q
from django.utils import timezone

from pm_core.audit.constants import AuditAction
from pm_core.audit.dispatch import AuditWriteFailure
from pm_core.audit.models import AuditCategory
from pm_core.audit.recorder import EventSpec, audit
from pm_core.common.api.exceptions import ConflictError, HoldActive
from pm_core.iam.context import AccessContext
from pm_core.iam.services import AssignmentService
from pm_core.retention.handlers import UnknownRecordClass, get_handler, registered_record_classes
from pm_core.retention.models import (
    RecordState,
    RetentionAction,
    RetentionActionStatus,
    RetentionActionType,
    RetentionPolicy,
    RetentionRecord,
)
from pm_core.retention.services import LegalHoldService, RetentionActionService, RetentionService

logger = logging.getLogger(__name__)

MINOR_UNTIL_AGE = 21


def majority_at(born: date) -> datetime:
    """Start (UTC) of the patient's 21st birthday; 29 February rolls to 1 March."""
    try:
        day = born.replace(year=born.year + MINOR_UNTIL_AGE)
    except ValueError:
        day = date(born.year + MINOR_UNTIL_AGE, 3, 1)
    return datetime.combine(day, time.min, tzinfo=dt_timezone.utc)


@dataclass
class RunReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    holds_expired: int = 0
    assignments_expired: int = 0
    enrolled: int = 0
    archived: int = 0
    proposed: int = 0
    executed: int = 0
    deferred: int = 0
    skipped_on_hold: int = 0
    retained_for_minors: int = 0
    archive_notices: int = 0
    errors: list = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class RetentionEngine:
    def __init__(self, *, context: Optional[AccessContext] = None):
        self.context = context or AccessContext.system()

    def run(self, now: Optional[datetime] = None) -> RunReport:
        now = now or timezone.now()
        report = RunReport(started_at=now)

        report.holds_expired = LegalHoldService.expire_due(context=self.context, now=now)
        report.assignments_expired = AssignmentService.expire_assignments(context=self.context, now=now)
        report.enrolled = self._enroll(now, report)

        for policy in RetentionPolicy.objects.filter(is_active=True):
            try:
                get_handler(policy.record_class)
            except UnknownRecordClass as exc:
                # fail closed: nothing of this class moves
                logger.error("retention policy %s skipped: %s", policy.record_class, exc)
                report.errors.append(str(exc))
                continue
            self._advance(policy, now, report)

        self._execute_due(now, report)

        report.finished_at = timezone.now()
        audit(
            self.context,
            EventSpec(
                action=AuditAction.RETENTION_RUN,
                category=AuditCategory.RETENTION,
                target_type="RetentionEngine",
                metadata=report.as_dict(),
            ),
        )
        logger.info(
            "retention run: archived=%d proposed=%d executed=%d deferred=%d errors=%d",
            report.archived,
            report.proposed,
            report.executed,
            report.deferred,
            len(report.errors),
        )
        return report

    def _enroll(self, now: datetime, report: RunReport) -> int:
        total = 0
        for record_class in registered_record_classes():
            handler = get_handler(record_class)
            if handler.enroll is None:
                continue
            total += handler.enroll(now)
        return total

    @staticmethod
    def _due(records, policy: RetentionPolicy, days: int, now: datetime) -> list[RetentionRecord]:
        cutoff = now - timedelta(days=days)
        return [r for r in records if r.basis_at(policy.basis) <= cutoff]

    def _partition_frozen(self, records: list[RetentionRecord], now: datetime, report: RunReport):
        """Split records into (movable, held) using the tenants' active holds."""
        if not records:
            return [], []
        holds_by_tenant = defaultdict(list)
        for hold in LegalHoldService.active_holds({r.tenant_id for r in records}, now=now):
            holds_by_tenant[hold.tenant_id].append(hold)

        movable, held = [], []
        for r in records:
            if any(h.covers(r) for h in holds_by_tenant.get(r.tenant_id, ())):
                held.append(r)
            else:
                movable.append(r)
        report.skipped_on_hold += len(held)
        return movable, held

    @staticmethod
    def _by_tenant(records: list[RetentionRecord]) -> dict:
        grouped = defaultdict(list)
        for r in records:
            grouped[r.tenant_id].append(r)
        return grouped

    def _advance(self, policy: RetentionPolicy, now: datetime, report: RunReport) -> None:
        base = RetentionRecord.objects.filter(record_class=policy.record_class, is_permanent=False)
        # both bases are on or after created_at_basis, so this bound is safe for either
        archive_bound = now - timedelta(days=policy.archive_after_days)

        active = self._due(
            base.filter(state=RecordState.ACTIVE, created_at_basis__lte=archive_bound),
            policy,
            policy.archive_after_days,
            now,
        )
        movable, _ = self._partition_frozen(active, now, report)
        for tenant_id, records in self._by_tenant(movable).items():
            RetentionService.archive_records(context=self.context, tenant_id=tenant_id,
                                             record_class=policy.record_class, records=records, now=now)
            report.archived += len(records)

        if policy.notify_before_archive_days:
            self._announce_upcoming_archive(base, policy, now, report)

        retention_bound = now - timedelta(days=policy.retention_days)
        archived = self._due(
            base.filter(state=RecordState.ARCHIVED, created_at_basis__lte=retention_bound),
            policy,
            policy.retention_days,
            now,
        )
        archived = self._past_minor_extension(archived, policy, now, report)
        movable, _ = self._partition_frozen(archived, now, report)
        for tenant_id, records in self._by_tenant(movable).items():
            RetentionService.propose_destruction(context=self.context, tenant_id=tenant_id,
                                                 record_class=policy.record_class, records=records, now=now)
            report.proposed += len(records)

    @staticmethod
    def _past_minor_extension(records: list[RetentionRecord], policy: RetentionPolicy, now: datetime,
                              report: RunReport) -> list[RetentionRecord]:
        """Drop records of patients still inside majority + minor_extension_days."""
        handler = get_handler(policy.record_class)
        if policy.minor_extension_days is None or handler.birth_dates is None or not records:
            return records

        births = handler.birth_dates(records)
        due = []
        for r in records:
            born = births.get(r.record_key)
            if born is not None and now < majority_at(born) + timedelta(days=policy.minor_extension_days):
                report.retained_for_minors += 1
                continue
            due.append(r)
        return due

    def _announce_upcoming_archive(self, base, policy: RetentionPolicy, now: datetime, report: RunReport) -> None:
        """One notice per tenant listing records whose archival falls inside the notice window."""
        window = timedelta(days=policy.notify_before_archive_days)
        archive_after = timedelta(days=policy.archive_after_days)
        candidates = base.filter(state=RecordState.ACTIVE, created_at_basis__lte=now + window - archive_after)

        upcoming = [r for r in candidates if now < r.basis_at(policy.basis) + archive_after <= now + window]
        for tenant_id, records in self._by_tenant(upcoming).items():
            first_due = min(r.basis_at(policy.basis) for r in records) + archive_after
            logger.info("retention: %d %s record(s) of tenant %s archive by %s",
                        len(records), policy.record_class, tenant_id, first_due)
            audit(
                self.context,
                EventSpec(
                    action=AuditAction.RETENTION_ARCHIVE_UPCOMING,
                    category=AuditCategory.RETENTION,
                    target_type="RetentionPolicy",
                    target_id=policy.id,
                    tenant_id=tenant_id,
                    metadata={
                        "record_class": policy.record_class,
                        "records": len(records),
                        "first_archive_at": first_due,
                        "notice_days": policy.notify_before_archive_days,
                    },
                ),
            )
            report.archive_notices += len(records)

    def _execute_due(self, now: datetime, report: RunReport) -> None:
        due = RetentionAction.objects.filter(action_type=RetentionActionType.DESTRUCTION).filter(
            Q(status=RetentionActionStatus.APPROVED) & (Q(scheduled_for__isnull=True) | Q(scheduled_for__lte=now))
            | Q(status=RetentionActionStatus.DEFERRED)
            & (Q(next_evaluation_at__isnull=True) | Q(next_evaluation_at__lte=now))
        ).order_by("created_at")

        for action in due:
            try:
                RetentionActionService.execute_destruction(context=self.context, action=action, now=now)
                report.executed += 1
            except HoldActive as exc:
                logger.info("expected deferral: action %s held by %s", action.id, exc.hold_ids)
                report.deferred += 1
            except (ConflictError, UnknownRecordClass) as exc:
                logger.error("destruction %s not executed: %s", action.id, exc)
                report.errors.append(f"{action.id}: {exc}")
            except AuditWriteFailure as exc:
                # the destruction rolled back with its certificate; the action stays due
                logger.critical("destruction %s rolled back, certificate not written: %s", action.id, exc)
                report.errors.append(f"{action.id}: certificate write failed: {exc}")
