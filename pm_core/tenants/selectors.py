# pm_core/tenants/selectors.py
from __future__ import annotations

from uuid import UUID

from pm_core.tenants.models import Tenant, TenantStatus


def is_tenant_active(*, tenant_id: UUID) -> bool:
    return Tenant.objects.filter(id=tenant_id, status=TenantStatus.ACTIVE).exists()


def list_tenants(*, tenant_ids) -> list[dict]:
    """
    Compact tenant descriptors for the session context endpoint.
    tenant_ids must be an enumerated collection (never the ALL sentinel).
    """
    qs = Tenant.objects.filter(id__in=list(tenant_ids)).order_by("name")
    return [
        {"id": str(t.id), "code": t.code, "name": t.name, "status": t.status}
        for t in qs
    ]
