# pm_core/iam/authz.py
"""
Authorization checks on top of the resolver.

Business code calls `require_permission(ctx, PermissionCode.X)`; DRF views
declare `required_permissions = {action: [codes]}` and use
`HasCorePermission`.
"""
from __future__ import annotations

import logging

from rest_framework.permissions import BasePermission

from pm_core.common.api.exceptions import Forbidden, NoTenantContext
from pm_core.common.conf import core_setting
from pm_core.iam.resolver import has_permission

logger = logging.getLogger(__name__)


def authorize(context, code: str) -> bool:
    return has_permission(context, code)


def record_denied(context, code: str, *, target_type: str = "", target_id=None) -> None:
    if not core_setting("AUDIT_DENIED_ACCESS"):
        return

    from pm_core.audit.constants import AuditAction
    from pm_core.audit.models import AuditCategory, AuditOutcome, AuditSeverity
    from pm_core.audit.recorder import EventSpec, audit

    audit(
        context,
        EventSpec(
            action=AuditAction.ACCESS_DENIED,
            category=AuditCategory.AUTHORIZATION,
            severity=AuditSeverity.WARNING,
            outcome=AuditOutcome.FAILURE,
            outcome_reason="missing_permission",
            target_type=target_type,
            target_id=target_id,
            metadata={"permission": str(code)},
        ),
    )


def require_permission(context, code: str, *, target_type: str = "", target_id=None) -> None:
    """Raise Forbidden (and record a WARNING entry) unless the context holds `code`."""
    if has_permission(context, code):
        return
    logger.info("access denied: user=%s tenant=%s permission=%s", context.user_id, context.active_tenant_id, code)
    record_denied(context, code, target_type=target_type, target_id=target_id)
    raise Forbidden()


class HasCorePermission(BasePermission):
    """
    Maps view actions to permission codes via `view.required_permissions`.

    Every listed code must be held. An action missing from the map is denied.
    The view must provide `get_access_context()` (AccessContextMixin).
    """
    message = "You do not have permission to perform this action."

    def has_permission(self, request, view) -> bool:
        user = getattr(request, "user", None)
        if not user or not getattr(user, "is_authenticated", False):
            return False

        required = getattr(view, "required_permissions", None) or {}
        action = getattr(view, "action", None)
        codes = required.get(action)
        if codes is None:
            logger.warning("%s: action %r has no permission mapping; denied", view.__class__.__name__, action)
            return False

        ctx = view.get_access_context()
        if codes and ctx.active_tenant_id is None and not ctx.is_global:
            # tenant permissions only exist inside a tenant
            raise NoTenantContext()
        for code in codes:
            require_permission(ctx, code, target_type=getattr(view, "audit_target_type", ""))
        return True
