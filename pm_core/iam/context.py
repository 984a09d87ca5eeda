# pm_core/iam/context.py
"""
Per-request identity and scope.

An AccessContext is built once per request from the authenticated user and
the requested tenant, then passed explicitly to every core function. Nothing
in the core reads an ambient "current user".
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Union
from uuid import UUID

from rest_framework.exceptions import ValidationError

from pm_core.common.api.exceptions import NoTenantContext, ScopeViolation, Unauthenticated
from pm_core.iam.models import RoleScope
from pm_core.iam.permissions import ALL_PERMISSION_CODES
from pm_core.iam.resolver import active_assignments, resolve_assignments
from pm_core.tenants.selectors import is_tenant_active

HDR_TENANT = "X-Tenant-Id"
HDR_TENANT_LEGACY = "X-Tenant-ID"

INVALID_TENANT_MSG = "Invalid X-Tenant-Id header. Provide a valid UUID."


class _AllTenants:
    """
    Sentinel for GLOBAL-scope callers.

    Intentionally supports neither iteration nor membership tests, so it can
    never be handed to a queryset filter by accident; callers must check
    `context.is_global` explicitly.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ALL_TENANTS"

    def __iter__(self):
        raise TypeError("ALL_TENANTS is a sentinel, not a collection; check context.is_global")

    def __contains__(self, item):
        raise TypeError("ALL_TENANTS is a sentinel, not a collection; check context.is_global")


ALL_TENANTS = _AllTenants()

TenantSet = Union[frozenset, _AllTenants]


@dataclass(frozen=True)
class AccessContext:
    user_id: Optional[int]
    active_tenant_id: Optional[UUID]
    authorized_tenant_ids: TenantSet
    role_codes: frozenset = field(default_factory=frozenset)
    permissions: frozenset = field(default_factory=frozenset)
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    is_system: bool = False

    @property
    def is_global(self) -> bool:
        return self.authorized_tenant_ids is ALL_TENANTS

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None and not self.is_system

    def can_act_on(self, tenant_id) -> bool:
        if tenant_id is None:
            return False
        if self.is_global:
            return True
        return _as_uuid(tenant_id) in self.authorized_tenant_ids

    def require_tenant(self) -> UUID:
        if self.active_tenant_id is None:
            raise NoTenantContext()
        return self.active_tenant_id

    def narrowed_to(self, tenant_id) -> "AccessContext":
        """
        Same caller, pinned to one tenant it can already act on.
        Never widens: a tenant outside the authorized set, or a switch away
        from an already active tenant, is refused.
        """
        tenant_id = _as_uuid(tenant_id) if tenant_id is not None else None
        if not self.can_act_on(tenant_id) or self.active_tenant_id not in (None, tenant_id):
            raise ScopeViolation(reason="narrowing_outside_scope", target_type="Tenant", target_id=tenant_id,
                                 target_tenant_id=tenant_id)
        if self.is_system or self.active_tenant_id == tenant_id:
            return replace(self, active_tenant_id=tenant_id)

        resolution = resolve_assignments(active_assignments(user_id=self.user_id), tenant_id=tenant_id)
        return replace(
            self,
            active_tenant_id=tenant_id,
            role_codes=resolution.role_codes,
            permissions=resolution.permissions,
        )

    @classmethod
    def system(cls, *, tenant_id: Optional[UUID] = None, request_id: Optional[str] = None) -> "AccessContext":
        """The actor used by scheduled jobs (retention runs, expiry sweeps)."""
        return cls(
            user_id=None,
            active_tenant_id=tenant_id,
            authorized_tenant_ids=ALL_TENANTS,
            role_codes=frozenset({"system"}),
            permissions=ALL_PERMISSION_CODES,
            request_id=request_id,
            is_system=True,
        )

    @classmethod
    def anonymous(cls, *, user_id: Optional[int] = None, request_id: Optional[str] = None,
                  ip_address: Optional[str] = None) -> "AccessContext":
        """Pre-authorization context for authentication events; carries no permissions."""
        return cls(
            user_id=user_id,
            active_tenant_id=None,
            authorized_tenant_ids=frozenset(),
            request_id=request_id,
            ip_address=ip_address,
        )


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def parse_tenant_header(request) -> Optional[UUID]:
    raw = None
    try:
        raw = request.headers.get(HDR_TENANT) or request.headers.get(HDR_TENANT_LEGACY)
    except AttributeError:
        raw = None
    if not raw:
        raw = request.META.get("HTTP_X_TENANT_ID")
    if not raw:
        return None
    try:
        return UUID(str(raw).strip())
    except ValueError:
        raise ValidationError({HDR_TENANT: INVALID_TENANT_MSG})


def build_context(
    *,
    user,
    requested_tenant_id: Optional[UUID] = None,
    require_tenant: bool = False,
    request_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    at: Optional[datetime] = None,
) -> AccessContext:
    """
    Raises:
      Unauthenticated   no authenticated user
      ScopeViolation    requested tenant outside the caller's authorized set
      NoTenantContext   tenant required but unresolvable, or tenant not ACTIVE
    """
    if user is None or not getattr(user, "is_authenticated", False):
        raise Unauthenticated()

    assignments = active_assignments(user_id=user.id, at=at)

    if any(a.role.scope_kind == RoleScope.GLOBAL for a in assignments):
        authorized: TenantSet = ALL_TENANTS
    else:
        authorized = frozenset(a.tenant_id for a in assignments if a.tenant_id is not None)

    base = AccessContext(
        user_id=user.id,
        active_tenant_id=None,
        authorized_tenant_ids=authorized,
        request_id=request_id,
        ip_address=ip_address,
    )

    active: Optional[UUID] = None
    if requested_tenant_id is not None:
        if not base.can_act_on(requested_tenant_id):
            from pm_core.audit.constants import AuditAction
            from pm_core.common.scope import record_scope_violation

            record_scope_violation(
                base,
                action=AuditAction.SCOPE_VIOLATION,
                reason="requested_tenant_not_authorized",
                target_type="Tenant",
                target_id=requested_tenant_id,
                target_tenant_id=requested_tenant_id,
            )
            raise ScopeViolation(
                reason="requested_tenant_not_authorized",
                target_type="Tenant",
                target_id=requested_tenant_id,
                target_tenant_id=requested_tenant_id,
            )
        active = requested_tenant_id
    elif not base.is_global and len(authorized) == 1:
        active = next(iter(authorized))

    if active is not None and not is_tenant_active(tenant_id=active):
        raise NoTenantContext("The selected tenant is not active.")

    if require_tenant and active is None:
        raise NoTenantContext()

    resolution = resolve_assignments(assignments, tenant_id=active)

    return AccessContext(
        user_id=user.id,
        active_tenant_id=active,
        authorized_tenant_ids=authorized,
        role_codes=resolution.role_codes,
        permissions=resolution.permissions,
        request_id=request_id,
        ip_address=ip_address,
    )


def build_context_from_request(request, *, require_tenant: bool = False) -> AccessContext:
    return build_context(
        user=getattr(request, "user", None),
        requested_tenant_id=parse_tenant_header(request),
        require_tenant=require_tenant,
        request_id=getattr(request, "request_id", None),
        ip_address=getattr(request, "client_ip", None),
    )
