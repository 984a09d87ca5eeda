# pm_core/audit/selectors.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from django.db.models import Count, Q, QuerySet

from pm_core.audit.models import AuditCategory, AuditEntry, AuditOutcome, AuditSeverity
from pm_core.common.scope import with_tenant_scope


def list_entries(context, *, cross_tenant: bool = False) -> QuerySet[AuditEntry]:
    """
    Audit entries visible to the caller. Global callers without an active
    tenant must ask for the audited cross-tenant view explicitly.
    """
    qs = with_tenant_scope(context, AuditEntry.objects.all(), cross_tenant=cross_tenant)
    return qs.order_by("-occurred_at", "-sequence")


def summarize(qs: QuerySet[AuditEntry], *, since: Optional[datetime] = None, until: Optional[datetime] = None,
              top: int = 10) -> dict:
    if since is not None:
        qs = qs.filter(occurred_at__gte=since)
    if until is not None:
        qs = qs.filter(occurred_at__lt=until)

    qs = qs.order_by()

    totals = qs.aggregate(
        total=Count("sequence"),
        security_events=Count(
            "sequence",
            filter=Q(category=AuditCategory.SECURITY) | Q(severity__in=[AuditSeverity.WARNING, AuditSeverity.CRITICAL]),
        ),
        critical=Count("sequence", filter=Q(severity=AuditSeverity.CRITICAL)),
        protected_data_access=Count("sequence", filter=Q(involves_protected_data=True)),
        failures=Count("sequence", filter=Q(outcome=AuditOutcome.FAILURE)),
    )

    by_action = list(
        qs.values("action").annotate(count=Count("sequence")).order_by("-count", "action")[:top]
    )
    by_target_type = list(
        qs.exclude(target_type="").values("target_type").annotate(count=Count("sequence")).order_by("-count", "target_type")[:top]
    )
    by_severity = {
        row["severity"]: row["count"]
        for row in qs.values("severity").annotate(count=Count("sequence"))
    }
    top_actors = list(
        qs.filter(actor_user_id__isnull=False)
        .values("actor_user_id")
        .annotate(count=Count("sequence"))
        .order_by("-count", "actor_user_id")[:top]
    )

    return {
        "since": since,
        "until": until,
        **totals,
        "by_severity": by_severity,
        "by_action": by_action,
        "by_target_type": by_target_type,
        "top_actors": top_actors,
    }
