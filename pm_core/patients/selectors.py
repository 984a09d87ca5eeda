# pm_core/patients/selectors.py
from __future__ import annotations

from django.db.models import Q, QuerySet

from pm_core.common.scope import with_tenant_scope
from pm_core.patients.models import Patient


def search_patients(context, *, q: str | None = None, include_archived: bool = True) -> QuerySet[Patient]:
    qs = with_tenant_scope(context, Patient.objects.all())

    qv = (q or "").strip()
    if qv:
        qs = qs.filter(
            Q(full_name__icontains=qv)
            | Q(mrn__icontains=qv)
            | Q(phone__icontains=qv)
            | Q(email__icontains=qv)
        )
    if not include_archived:
        qs = qs.filter(archived_at__isnull=True)

    return qs.order_by("-created_at")
