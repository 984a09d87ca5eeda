# pm_core/retention/services.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional
from uuid import UUID

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from pm_core.audit.constants import AuditAction
from pm_core.audit.models import AuditCategory
from pm_core.audit.recorder import EventSpec, audit
from pm_core.common.api.exceptions import ConflictError, HoldActive
from pm_core.common.conf import core_setting
from pm_core.common.scope import with_tenant_assignment, with_tenant_guard
from pm_core.retention.handlers import UnknownRecordClass, get_handler
from pm_core.retention.models import (
    OPEN_ACTION_STATUSES,
    DestructionMethod,
    LegalHold,
    LegalHoldStatus,
    RecordState,
    RetentionAction,
    RetentionActionStatus,
    RetentionActionType,
    RetentionBasis,
    RetentionLock,
    RetentionPolicy,
    RetentionRecord,
)

logger = logging.getLogger(__name__)


def lock_tenant(tenant_id: UUID) -> RetentionLock:
    """Take the tenant's retention lock; call inside transaction.atomic()."""
    RetentionLock.objects.get_or_create(tenant_id=tenant_id)
    return RetentionLock.objects.select_for_update().get(tenant_id=tenant_id)


def _tenant_ctx(context, tenant_id):
    """Pin a global caller (or the system actor) to the row's tenant for guarded writes."""
    if context.active_tenant_id == tenant_id:
        return context
    return context.narrowed_to(tenant_id)


def _retention_event(context, *, action: str, target_type: str, target_id, tenant_id=None,
                     before=None, after=None, metadata=None, outcome_reason: str = "", **extra):
    return audit(
        context,
        EventSpec(
            action=action,
            category=AuditCategory.RETENTION,
            target_type=target_type,
            target_id=target_id,
            before=before,
            after=after,
            metadata=metadata or {},
            outcome_reason=outcome_reason,
            tenant_id=tenant_id,
            **extra,
        ),
        durable=extra.get("is_permanent", False),
    )


def _require_reason(value: Optional[str], field: str = "reason") -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError({field: "This field is required."})
    return value


def _check_record_class(record_class: str, field: str = "record_class") -> None:
    try:
        get_handler(record_class)
    except UnknownRecordClass:
        raise ValidationError({field: f"Unknown record class: {record_class}"})


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

def _policy_snapshot(p: RetentionPolicy) -> dict:
    return {
        "record_class": p.record_class,
        "retention_days": p.retention_days,
        "basis": p.basis,
        "archive_after_days": p.archive_after_days,
        "destruction_method": p.destruction_method,
        "minor_extension_days": p.minor_extension_days,
        "notify_before_archive_days": p.notify_before_archive_days,
        "auto_extend_on_access": p.auto_extend_on_access,
        "is_active": p.is_active,
    }


MAX_MINOR_EXTENSION_DAYS = 50 * 365
MAX_ARCHIVE_NOTICE_DAYS = 365


def _validate_policy(*, retention_days: int, archive_after_days: int, basis: str, destruction_method: str,
                     minor_extension_days: Optional[int] = None,
                     notify_before_archive_days: Optional[int] = None) -> None:
    errors = {}
    if retention_days is None or retention_days <= 0:
        errors["retention_days"] = "Must be a positive number of days."
    if archive_after_days is None or archive_after_days <= 0:
        errors["archive_after_days"] = "Must be a positive number of days."
    elif retention_days and archive_after_days > retention_days:
        errors["archive_after_days"] = "Cannot exceed retention_days."
    if basis not in RetentionBasis.values:
        errors["basis"] = f"Unknown basis: {basis}"
    if destruction_method not in DestructionMethod.values:
        errors["destruction_method"] = f"Unknown destruction method: {destruction_method}"
    if minor_extension_days is not None and not 0 <= minor_extension_days <= MAX_MINOR_EXTENSION_DAYS:
        errors["minor_extension_days"] = f"Must be between 0 and {MAX_MINOR_EXTENSION_DAYS} days."
    if notify_before_archive_days is not None and not 1 <= notify_before_archive_days <= MAX_ARCHIVE_NOTICE_DAYS:
        errors["notify_before_archive_days"] = f"Must be between 1 and {MAX_ARCHIVE_NOTICE_DAYS} days."
    if errors:
        raise ValidationError(errors)


class RetentionPolicyService:
    @staticmethod
    @transaction.atomic
    def create_policy(
        *,
        context,
        record_class: str,
        retention_days: int,
        archive_after_days: int,
        basis: str = RetentionBasis.CREATED,
        destruction_method: str = DestructionMethod.PURGE,
        minor_extension_days: Optional[int] = None,
        notify_before_archive_days: Optional[int] = None,
        auto_extend_on_access: bool = False,
        description: str = "",
    ) -> RetentionPolicy:
        _check_record_class(record_class)
        _validate_policy(retention_days=retention_days, archive_after_days=archive_after_days, basis=basis,
                         destruction_method=destruction_method, minor_extension_days=minor_extension_days,
                         notify_before_archive_days=notify_before_archive_days)
        if RetentionPolicy.objects.filter(record_class=record_class).exists():
            raise ConflictError("A policy for this record class already exists.")

        policy = RetentionPolicy.objects.create(
            record_class=record_class,
            retention_days=retention_days,
            archive_after_days=archive_after_days,
            basis=basis,
            destruction_method=destruction_method,
            minor_extension_days=minor_extension_days,
            notify_before_archive_days=notify_before_archive_days,
            auto_extend_on_access=bool(auto_extend_on_access),
            description=description or "",
        )
        _retention_event(context, action=AuditAction.RETENTION_POLICY_CREATED, target_type="RetentionPolicy",
                         target_id=policy.id, after=_policy_snapshot(policy))
        return policy

    @staticmethod
    @transaction.atomic
    def update_policy(*, context, policy: RetentionPolicy, **changes) -> RetentionPolicy:
        before = _policy_snapshot(policy)
        allowed = ("retention_days", "archive_after_days", "basis", "destruction_method", "is_active",
                   "auto_extend_on_access", "description")
        for key in allowed:
            if key in changes and changes[key] is not None:
                setattr(policy, key, changes[key])
        # None clears these
        for key in ("minor_extension_days", "notify_before_archive_days"):
            if key in changes:
                setattr(policy, key, changes[key])

        _validate_policy(retention_days=policy.retention_days, archive_after_days=policy.archive_after_days,
                         basis=policy.basis, destruction_method=policy.destruction_method,
                         minor_extension_days=policy.minor_extension_days,
                         notify_before_archive_days=policy.notify_before_archive_days)
        policy.save()

        _retention_event(context, action=AuditAction.RETENTION_POLICY_UPDATED, target_type="RetentionPolicy",
                         target_id=policy.id, before=before, after=_policy_snapshot(policy))
        return policy


# ---------------------------------------------------------------------------
# Records & lifecycle transitions
# ---------------------------------------------------------------------------

class RetentionService:
    @staticmethod
    def track(
        *,
        record_class: str,
        record_key: str,
        tenant_id: UUID,
        patient_id: Optional[UUID] = None,
        created_at: Optional[datetime] = None,
        is_permanent: bool = False,
    ) -> RetentionRecord:
        """Enroll one record in lifecycle tracking. Idempotent on (record_class, record_key)."""
        get_handler(record_class)
        record, _ = RetentionRecord.objects.get_or_create(
            record_class=record_class,
            record_key=str(record_key),
            defaults={
                "tenant_id": tenant_id,
                "patient_id": patient_id,
                "created_at_basis": created_at or timezone.now(),
                "is_permanent": is_permanent,
            },
        )
        return record

    @staticmethod
    def touch(*, record_class: str, record_key: str, at: Optional[datetime] = None) -> int:
        return (
            RetentionRecord.objects.filter(record_class=record_class, record_key=str(record_key))
            .exclude(state=RecordState.DESTROYED)
            .update(last_activity_at=at or timezone.now())
        )

    @staticmethod
    def record_access(*, record_class: str, record_key: str, at: Optional[datetime] = None) -> int:
        """A read extends retention only when the class policy opts in."""
        extends = RetentionPolicy.objects.filter(
            record_class=record_class, is_active=True, auto_extend_on_access=True
        ).exists()
        if not extends:
            return 0
        return RetentionService.touch(record_class=record_class, record_key=record_key, at=at)

    @staticmethod
    def mark_destroyed(*, record_class: str, record_key: str, at: Optional[datetime] = None) -> int:
        at = at or timezone.now()
        return (
            RetentionRecord.objects.filter(record_class=record_class, record_key=str(record_key))
            .exclude(state=RecordState.DESTROYED)
            .update(state=RecordState.DESTROYED, state_changed_at=at)
        )

    @staticmethod
    def archive_records(*, context, tenant_id: UUID, record_class: str, records: list[RetentionRecord],
                        now: datetime) -> Optional[RetentionAction]:
        """ACTIVE -> ARCHIVED for one tenant and class, recorded as one executed ARCHIVE action."""
        if not records:
            return None
        handler = get_handler(record_class)

        with transaction.atomic():
            action = RetentionAction.objects.create(
                tenant_id=tenant_id,
                action_type=RetentionActionType.ARCHIVE,
                status=RetentionActionStatus.EXECUTED,
                record_class=record_class,
                executed_at=now,
                executed_by_user_id=context.user_id,
                result={"archived": len(records)},
            )
            action.records.set(records)
            for record in records:
                handler.archive(record)
            RetentionRecord.objects.filter(pk__in=[r.pk for r in records], state=RecordState.ACTIVE).update(
                state=RecordState.ARCHIVED, state_changed_at=now
            )

            _retention_event(context, action=AuditAction.RETENTION_ARCHIVED, target_type="RetentionAction",
                             target_id=action.id, tenant_id=tenant_id,
                             metadata={"record_class": record_class, "records": len(records)})
        return action

    @staticmethod
    def propose_destruction(*, context, tenant_id: UUID, record_class: str, records: list[RetentionRecord],
                            now: datetime) -> Optional[RetentionAction]:
        """ARCHIVED -> PENDING_DESTRUCTION; the action waits for approval."""
        if not records:
            return None

        with transaction.atomic():
            action = RetentionAction.objects.create(
                tenant_id=tenant_id,
                action_type=RetentionActionType.DESTRUCTION,
                status=RetentionActionStatus.PENDING_APPROVAL,
                record_class=record_class,
            )
            action.records.set(records)
            RetentionRecord.objects.filter(pk__in=[r.pk for r in records], state=RecordState.ARCHIVED).update(
                state=RecordState.PENDING_DESTRUCTION, state_changed_at=now
            )

            _retention_event(context, action=AuditAction.RETENTION_DESTRUCTION_PROPOSED,
                             target_type="RetentionAction", target_id=action.id, tenant_id=tenant_id,
                             metadata={"record_class": record_class, "records": len(records)})
        return action


# ---------------------------------------------------------------------------
# Actions: approve / cancel / execute
# ---------------------------------------------------------------------------

def _action_snapshot(a: RetentionAction) -> dict:
    return {
        "status": a.status,
        "approved_by_user_id": a.approved_by_user_id,
        "approved_at": a.approved_at,
        "scheduled_for": a.scheduled_for,
        "legal_hold_cleared": a.legal_hold_cleared,
        "deferral_count": a.deferral_count,
    }


def _locked_action(context, action: RetentionAction) -> RetentionAction:
    ctx = _tenant_ctx(context, action.tenant_id)
    return with_tenant_guard(ctx, RetentionAction.objects.select_for_update().filter(pk=action.pk)).get()


class RetentionActionService:
    @staticmethod
    def approve(
        *,
        context,
        action: RetentionAction,
        note: str = "",
        scheduled_for: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> RetentionAction:
        now = now or timezone.now()
        with transaction.atomic():
            action = _locked_action(context, action)
            if action.action_type != RetentionActionType.DESTRUCTION:
                raise ConflictError("Only destruction actions need approval.")
            if action.status != RetentionActionStatus.PENDING_APPROVAL:
                raise ConflictError(f"Action is {action.status}; only PENDING_APPROVAL actions can be approved.")

            before = _action_snapshot(action)
            action.status = RetentionActionStatus.APPROVED
            action.approved_by_user_id = context.user_id
            action.approved_at = now
            action.approval_note = note or ""
            action.scheduled_for = scheduled_for or now
            action.save()

            _retention_event(context, action=AuditAction.RETENTION_ACTION_APPROVED, target_type="RetentionAction",
                             target_id=action.id, tenant_id=action.tenant_id, before=before,
                             after=_action_snapshot(action))
        return action

    @staticmethod
    def cancel(*, context, action: RetentionAction, reason: str, now: Optional[datetime] = None) -> RetentionAction:
        reason = _require_reason(reason)
        now = now or timezone.now()
        with transaction.atomic():
            action = _locked_action(context, action)
            if action.status not in OPEN_ACTION_STATUSES:
                raise ConflictError(f"Action is {action.status}; it can no longer be cancelled.")

            before = _action_snapshot(action)
            action.status = RetentionActionStatus.CANCELLED
            action.cancelled_reason = reason
            action.save(update_fields=["status", "cancelled_reason", "updated_at"])

            if action.action_type == RetentionActionType.DESTRUCTION:
                action.records.filter(state=RecordState.PENDING_DESTRUCTION).update(
                    state=RecordState.ARCHIVED, state_changed_at=now
                )

            _retention_event(context, action=AuditAction.RETENTION_ACTION_CANCELLED, target_type="RetentionAction",
                             target_id=action.id, tenant_id=action.tenant_id, before=before,
                             after=_action_snapshot(action), outcome_reason=reason)
        return action

    @staticmethod
    def execute_destruction(
        *,
        context,
        action: RetentionAction,
        witness_user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RetentionAction:
        """
        PENDING_DESTRUCTION -> DESTROYED.

        Runs under the tenant's retention lock, so a hold created before this
        point is always seen. A covering hold moves the action to DEFERRED;
        that state is committed before HoldActive is raised.
        """
        now = now or timezone.now()
        blocking: list[LegalHold] = []

        with transaction.atomic():
            lock_tenant(action.tenant_id)
            action = _locked_action(context, action)

            if action.action_type != RetentionActionType.DESTRUCTION:
                raise ConflictError("Not a destruction action.")
            if action.status not in (RetentionActionStatus.APPROVED, RetentionActionStatus.DEFERRED):
                raise ConflictError(f"Action is {action.status}; only approved actions can be executed.")
            if action.approved_at is None:
                raise ConflictError("Action has not been approved.")
            if action.scheduled_for and action.scheduled_for > now:
                raise ConflictError("Action is scheduled for a later time.")

            records = list(action.records.exclude(state=RecordState.DESTROYED))
            blocking = LegalHoldService.covering_holds(records, now=now)

            if blocking:
                RetentionActionService._defer(context, action, blocking, now=now)
            else:
                RetentionActionService._destroy(context, action, records, witness_user_id=witness_user_id, now=now)

        if blocking:
            raise HoldActive(action_id=action.id, hold_ids=[str(h.id) for h in blocking])
        return action

    @staticmethod
    def _defer(context, action: RetentionAction, holds: list[LegalHold], *, now: datetime) -> None:
        recheck = timedelta(seconds=core_setting("RETENTION_HOLD_RECHECK_SECONDS"))
        action.status = RetentionActionStatus.DEFERRED
        action.legal_hold_cleared = False
        action.next_evaluation_at = now + recheck
        action.deferral_count += 1
        action.save(update_fields=["status", "legal_hold_cleared", "next_evaluation_at", "deferral_count",
                                   "updated_at"])

        logger.info("destruction %s deferred by hold(s) %s", action.id, [str(h.id) for h in holds])
        _retention_event(
            context,
            action=AuditAction.RETENTION_DESTRUCTION_DEFERRED,
            target_type="RetentionAction",
            target_id=action.id,
            tenant_id=action.tenant_id,
            outcome_reason="legal_hold_active",
            metadata={
                "hold_ids": [str(h.id) for h in holds],
                "next_evaluation_at": action.next_evaluation_at,
                "deferral_count": action.deferral_count,
            },
        )

    @staticmethod
    def _destroy(context, action: RetentionAction, records: list[RetentionRecord], *,
                 witness_user_id: Optional[int], now: datetime) -> None:
        handler = get_handler(action.record_class)
        policy = RetentionPolicy.objects.filter(record_class=action.record_class).first()

        # the purge path checks this flag on the action itself
        action.legal_hold_cleared = True
        destroyed_rows = 0
        for record in records:
            destroyed_rows += handler.destroy(record, action) or 0

        RetentionRecord.objects.filter(pk__in=[r.pk for r in records]).update(
            state=RecordState.DESTROYED, state_changed_at=now
        )

        action.status = RetentionActionStatus.EXECUTED
        action.executed_at = now
        action.executed_by_user_id = context.user_id
        action.witness_user_id = witness_user_id
        action.certificate_reference = f"DC-{now:%Y%m%d}-{action.id.hex[:12].upper()}"
        action.result = {
            "records": len(records),
            "rows_destroyed": destroyed_rows,
            "record_keys": [r.record_key for r in records],
        }
        action.save()

        # Certificate: permanent, written inline; a failed write rolls the destruction back.
        _retention_event(
            context,
            action=AuditAction.RETENTION_DESTRUCTION_EXECUTED,
            target_type="RetentionAction",
            target_id=action.id,
            tenant_id=action.tenant_id,
            is_permanent=True,
            metadata={
                "certificate_reference": action.certificate_reference,
                "record_class": action.record_class,
                "record_keys": action.result["record_keys"],
                "records": len(records),
                "rows_destroyed": destroyed_rows,
                "destruction_method": policy.destruction_method if policy else DestructionMethod.PURGE,
                "approved_by_user_id": action.approved_by_user_id,
                "approved_at": action.approved_at,
                "executed_by_user_id": action.executed_by_user_id,
                "witness_user_id": witness_user_id,
                "legal_hold_checked_at": now,
            },
        )
        logger.info("destruction %s executed: %d record(s), %d row(s)", action.id, len(records), destroyed_rows)


# ---------------------------------------------------------------------------
# Legal holds
# ---------------------------------------------------------------------------

def _hold_snapshot(h: LegalHold) -> dict:
    return {
        "status": h.status,
        "record_classes": list(h.record_classes or []),
        "patient_id": h.patient_id,
        "date_from": h.date_from,
        "date_to": h.date_to,
        "expires_at": h.expires_at,
        "version": h.version,
    }


def _hold_ledger_action(hold: LegalHold, action_type: str, *, user_id, now: datetime) -> RetentionAction:
    classes = list(hold.record_classes or [])
    return RetentionAction.objects.create(
        tenant_id=hold.tenant_id,
        action_type=action_type,
        status=RetentionActionStatus.EXECUTED,
        record_class=",".join(classes)[:64] if classes else "*",
        executed_at=now,
        executed_by_user_id=user_id,
        result={"hold_id": str(hold.id)},
    )


class LegalHoldService:
    @staticmethod
    def create_hold(
        *,
        context,
        reason: str,
        record_classes: Iterable[str] = (),
        patient_id: Optional[UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        tenant_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> LegalHold:
        now = now or timezone.now()
        reason = _require_reason(reason)
        classes = sorted(set(record_classes or ()))
        for rc in classes:
            _check_record_class(rc, field="record_classes")
        if date_from and date_to and date_from > date_to:
            raise ValidationError({"date_to": "Must not be before date_from."})
        if expires_at is not None and expires_at <= now:
            raise ValidationError({"expires_at": "Must be in the future."})

        data = with_tenant_assignment(context, LegalHold, {"tenant_id": tenant_id})

        with transaction.atomic():
            lock_tenant(data["tenant_id"])
            hold = LegalHold.objects.create(
                tenant_id=data["tenant_id"],
                record_classes=classes,
                patient_id=patient_id,
                date_from=date_from,
                date_to=date_to,
                expires_at=expires_at,
                reason=reason,
                created_by_user_id=context.user_id,
            )
            _hold_ledger_action(hold, RetentionActionType.HOLD, user_id=context.user_id, now=now)

            _retention_event(context, action=AuditAction.LEGAL_HOLD_CREATED, target_type="LegalHold",
                             target_id=hold.id, after=_hold_snapshot(hold), outcome_reason=reason)
        return hold

    @staticmethod
    def release_hold(
        *,
        context,
        hold: LegalHold,
        reason: str,
        expected_version: int,
        now: Optional[datetime] = None,
    ) -> LegalHold:
        """
        Optimistic release: refused with ConflictError when the hold changed
        since `expected_version` was read. Deferred actions of the tenant
        become due for the next evaluation.
        """
        now = now or timezone.now()
        reason = _require_reason(reason)
        ctx = _tenant_ctx(context, hold.tenant_id)
        before = _hold_snapshot(hold)

        with transaction.atomic():
            updated = with_tenant_guard(
                ctx,
                LegalHold.objects.filter(pk=hold.pk, version=expected_version, status=LegalHoldStatus.ACTIVE),
            ).update(
                status=LegalHoldStatus.RELEASED,
                released_by_user_id=context.user_id,
                released_at=now,
                release_reason=reason,
                version=F("version") + 1,
                updated_at=now,
            )
            if not updated:
                raise ConflictError("Legal hold was modified or released concurrently; reload and retry.")

            hold.refresh_from_db()
            _hold_ledger_action(hold, RetentionActionType.RELEASE, user_id=context.user_id, now=now)
            LegalHoldService._reschedule_deferred(hold.tenant_id, now=now)

            _retention_event(ctx, action=AuditAction.LEGAL_HOLD_RELEASED, target_type="LegalHold",
                             target_id=hold.id, before=before, after=_hold_snapshot(hold), outcome_reason=reason)
        return hold

    @staticmethod
    def expire_due(*, context, now: Optional[datetime] = None) -> int:
        now = now or timezone.now()
        due = list(
            LegalHold.objects.filter(status=LegalHoldStatus.ACTIVE, expires_at__isnull=False, expires_at__lte=now)
        )
        count = 0
        for hold in due:
            with transaction.atomic():
                updated = LegalHold.objects.filter(pk=hold.pk, status=LegalHoldStatus.ACTIVE).update(
                    status=LegalHoldStatus.EXPIRED,
                    version=F("version") + 1,
                    updated_at=now,
                )
                if not updated:
                    continue
                LegalHoldService._reschedule_deferred(hold.tenant_id, now=now)
                _retention_event(context, action=AuditAction.LEGAL_HOLD_EXPIRED, target_type="LegalHold",
                                 target_id=hold.id, tenant_id=hold.tenant_id,
                                 metadata={"expires_at": hold.expires_at})
                count += 1
        if count:
            logger.info("expired %d legal hold(s)", count)
        return count

    @staticmethod
    def _reschedule_deferred(tenant_id: UUID, *, now: datetime) -> None:
        RetentionAction.objects.filter(
            tenant_id=tenant_id,
            action_type=RetentionActionType.DESTRUCTION,
            status=RetentionActionStatus.DEFERRED,
        ).update(next_evaluation_at=now)

    @staticmethod
    def active_holds(tenant_ids: Iterable[UUID], *, now: Optional[datetime] = None):
        now = now or timezone.now()
        return LegalHold.objects.filter(
            tenant_id__in=list(tenant_ids),
            status=LegalHoldStatus.ACTIVE,
        ).filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))

    @staticmethod
    def covering_holds(records: Iterable[RetentionRecord], *, now: Optional[datetime] = None) -> list[LegalHold]:
        records = list(records)
        if not records:
            return []
        holds = LegalHoldService.active_holds({r.tenant_id for r in records}, now=now)
        return [h for h in holds if any(h.covers(r) for r in records)]

    @staticmethod
    def is_frozen(record: RetentionRecord, *, now: Optional[datetime] = None) -> bool:
        return bool(LegalHoldService.covering_holds([record], now=now))
