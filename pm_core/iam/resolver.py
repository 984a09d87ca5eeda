# pm_core/iam/resolver.py
"""
Permission resolution.

Effective permissions are the union of the permission codes of every
unexpired, active role assignment the user holds for the active tenant,
plus every GLOBAL assignment. Permissions never subtract.

The result is computed once when the AccessContext is built and carried
on it; nothing caches across requests because assignments can change.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from django.db.models import Q
from django.utils import timezone

from pm_core.iam.models import RoleAssignment, RoleScope
from pm_core.iam.permissions import ALL_PERMISSION_CODES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    role_codes: frozenset[str]
    permissions: frozenset[str]


def active_assignments(*, user_id: int, at: Optional[datetime] = None) -> list[RoleAssignment]:
    at = at or timezone.now()
    return list(
        RoleAssignment.objects.select_related("role")
        .filter(user_id=user_id, role__is_active=True)
        .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=at))
        .order_by("created_at")
    )


def resolve_assignments(assignments: Iterable[RoleAssignment], *, tenant_id: Optional[UUID]) -> Resolution:
    """
    Pure union over the given assignments for one tenant.
    Unknown codes stored on a role are dropped (the permission set is closed).
    """
    roles: set[str] = set()
    perms: set[str] = set()

    for a in assignments:
        role = a.role
        if role.scope_kind == RoleScope.GLOBAL:
            applies = True
        else:
            applies = tenant_id is not None and a.tenant_id == tenant_id

        if not applies:
            continue

        roles.add(role.code)
        for code in role.permissions or []:
            if code in ALL_PERMISSION_CODES:
                perms.add(code)
            else:
                logger.warning("role %s carries unknown permission code %r; ignored", role.code, code)

    return Resolution(role_codes=frozenset(roles), permissions=frozenset(perms))


def compute_permissions(*, user_id: int, tenant_id: Optional[UUID], at: Optional[datetime] = None) -> frozenset[str]:
    """Fresh resolution from the current assignments (no caching)."""
    return resolve_assignments(active_assignments(user_id=user_id, at=at), tenant_id=tenant_id).permissions


def resolve_permissions(context) -> frozenset[str]:
    """The effective permission set of a context (resolved at build time)."""
    return context.permissions


def has_permission(context, code: str) -> bool:
    """
    The only permission check other components may call.
    Codes outside the closed set are always denied.
    """
    if code not in ALL_PERMISSION_CODES:
        logger.warning("permission check for unknown code %r denied", code)
        return False
    return code in resolve_permissions(context)
