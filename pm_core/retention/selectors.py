# pm_core/retention/selectors.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from django.db.models import Count, F, Q, QuerySet
from django.db.models.functions import Coalesce
from django.utils import timezone

from pm_core.common.scope import with_tenant_scope
from pm_core.retention.models import (
    LegalHold,
    LegalHoldStatus,
    RecordState,
    RetentionAction,
    RetentionBasis,
    RetentionPolicy,
    RetentionRecord,
)


def list_policies(*, include_inactive: bool = True) -> QuerySet[RetentionPolicy]:
    qs = RetentionPolicy.objects.all()
    if not include_inactive:
        qs = qs.filter(is_active=True)
    return qs.order_by("record_class")


def list_actions(
    context,
    *,
    status: Optional[str] = None,
    action_type: Optional[str] = None,
    record_class: Optional[str] = None,
    cross_tenant: bool = False,
) -> QuerySet[RetentionAction]:
    qs = with_tenant_scope(context, RetentionAction.objects.all(), cross_tenant=cross_tenant)
    if status:
        qs = qs.filter(status=status)
    if action_type:
        qs = qs.filter(action_type=action_type)
    if record_class:
        qs = qs.filter(record_class=record_class)
    return qs.order_by("-created_at")


def list_holds(context, *, status: Optional[str] = None, cross_tenant: bool = False) -> QuerySet[LegalHold]:
    qs = with_tenant_scope(context, LegalHold.objects.all(), cross_tenant=cross_tenant)
    if status:
        qs = qs.filter(status=status)
    return qs.order_by("-created_at")


def list_records(
    context,
    *,
    record_class: Optional[str] = None,
    state: Optional[str] = None,
    cross_tenant: bool = False,
) -> QuerySet[RetentionRecord]:
    qs = with_tenant_scope(context, RetentionRecord.objects.all(), cross_tenant=cross_tenant)
    if record_class:
        qs = qs.filter(record_class=record_class)
    if state:
        qs = qs.filter(state=state)
    return qs.order_by("record_class", "created_at_basis")


def retention_report(records: QuerySet[RetentionRecord], *, now: Optional[datetime] = None,
                     expiring_within_days: int = 30) -> dict:
    """
    Counts per lifecycle state, records frozen by an active hold, and
    records whose retention period ends within the window.
    `records` is an already scoped queryset.
    """
    now = now or timezone.now()
    records = records.order_by()

    by_state = {state: 0 for state in RecordState.values}
    for row in records.values("state").annotate(count=Count("id")):
        by_state[row["state"]] = row["count"]

    tenant_ids = list(records.values_list("tenant_id", flat=True).distinct())
    holds = LegalHold.objects.filter(tenant_id__in=tenant_ids, status=LegalHoldStatus.ACTIVE).filter(
        Q(expires_at__isnull=True) | Q(expires_at__gt=now)
    )
    on_hold_q = Q(pk__in=[])
    for hold in holds:
        on_hold_q |= hold.record_filter()
    live = records.exclude(state=RecordState.DESTROYED)
    on_hold = live.filter(on_hold_q).count() if holds else 0

    expiring = 0
    window_end = now + timedelta(days=expiring_within_days)
    for policy in RetentionPolicy.objects.filter(is_active=True):
        if policy.basis == RetentionBasis.LAST_ACTIVITY:
            basis = Coalesce("last_activity_at", "created_at_basis")
        else:
            basis = F("created_at_basis")
        expiring += (
            live.filter(record_class=policy.record_class, is_permanent=False)
            .annotate(basis_at=basis)
            .filter(
                basis_at__gt=now - timedelta(days=policy.retention_days),
                basis_at__lte=window_end - timedelta(days=policy.retention_days),
            )
            .count()
        )

    return {
        "generated_at": now,
        "total": sum(by_state.values()),
        "by_state": by_state,
        "on_hold": on_hold,
        "expiring_soon": expiring,
        "expiring_within_days": expiring_within_days,
        "active_holds": holds.count(),
    }
