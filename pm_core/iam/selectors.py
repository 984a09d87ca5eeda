# pm_core/iam/selectors.py
from __future__ import annotations

from typing import Optional

from django.db.models import QuerySet

from pm_core.common.scope import with_tenant_scope
from pm_core.iam.models import Role, RoleAssignment


def list_roles(*, include_inactive: bool = False) -> QuerySet[Role]:
    qs = Role.objects.all()
    if not include_inactive:
        qs = qs.filter(is_active=True)
    return qs.order_by("code")


def get_role_by_code(*, code: str) -> Optional[Role]:
    return Role.objects.filter(code=code).first()


def list_assignments(
    context,
    *,
    user_id: Optional[int] = None,
    role_code: Optional[str] = None,
    include_global: bool = False,
) -> QuerySet[RoleAssignment]:
    """
    Assignments visible to the caller.
    GLOBAL assignments (tenant_id NULL) are only listed through the audited
    cross-tenant path, which requires a global caller.
    """
    base = RoleAssignment.objects.select_related("role")
    if include_global:
        qs = with_tenant_scope(context, base, cross_tenant=True)
    else:
        qs = with_tenant_scope(context, base)

    if user_id is not None:
        qs = qs.filter(user_id=user_id)
    if role_code:
        qs = qs.filter(role__code=role_code)
    return qs.order_by("-created_at")


def user_assignment_summary(*, user_id: int) -> list[dict]:
    """Compact view of one user's assignments (session endpoint)."""
    from pm_core.iam.resolver import active_assignments

    return [
        {
            "role_code": a.role.code,
            "role_name": a.role.name,
            "scope_kind": a.role.scope_kind,
            "tenant_id": str(a.tenant_id) if a.tenant_id else None,
            "expires_at": a.expires_at.isoformat() if a.expires_at else None,
        }
        for a in active_assignments(user_id=user_id)
    ]
