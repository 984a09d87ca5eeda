# pm_core/common/scope.py
"""
Tenant scoping interceptor.

Every model that reaches storage through the core is registered as either
tenant-scoped (rows carry tenant_id) or global (catalog data). The wrappers
below conjoin the tenant constraint explicitly at the call site:

    qs = with_tenant_scope(ctx, Patient.objects.all())          # READ
    data = with_tenant_assignment(ctx, Patient, payload)       # CREATE
    qs = with_tenant_guard(ctx, Patient.objects.filter(id=pk))  # UPDATE / DELETE
    obj = get_scoped(ctx, Patient, pk)                          # single row

An unregistered model is refused (ScopeConfigurationError) rather than
served unscoped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import models
from rest_framework.exceptions import NotFound

from pm_core.common.api.exceptions import NoTenantContext, ScopeConfigurationError, ScopeViolation

logger = logging.getLogger(__name__)

TENANT = "tenant"
GLOBAL = "global"

_REGISTRY: dict[str, dict[str, str]] = {}


def _key(model) -> str:
    return model._meta.label_lower


def register_tenant_scoped(model, *, field_name: str = "tenant_id") -> None:
    _REGISTRY[_key(model)] = {"kind": TENANT, "field": field_name}


def register_global(model) -> None:
    _REGISTRY[_key(model)] = {"kind": GLOBAL, "field": ""}


def scope_kind_for(model) -> str:
    entry = _REGISTRY.get(_key(model))
    if entry is None:
        raise ScopeConfigurationError(
            f"{model._meta.label} is not registered as tenant-scoped or global; refusing unscoped access."
        )
    return entry["kind"]


def tenant_field_for(model) -> str:
    scope_kind_for(model)
    return _REGISTRY[_key(model)]["field"]


def is_tenant_scoped(model) -> bool:
    return scope_kind_for(model) == TENANT


# ---------------------------------------------------------------------------
# Audit hooks
# ---------------------------------------------------------------------------

def record_scope_violation(
    context,
    *,
    action: Optional[str] = None,
    reason: str,
    target_type: str,
    target_id: Any = None,
    target_tenant_id: Any = None,
) -> None:
    from pm_core.audit.constants import AuditAction
    from pm_core.audit.models import AuditCategory, AuditOutcome, AuditSeverity
    from pm_core.audit.recorder import EventSpec, audit

    logger.warning(
        "scope violation: user=%s active_tenant=%s target=%s:%s target_tenant=%s reason=%s",
        context.user_id,
        context.active_tenant_id,
        target_type,
        target_id,
        target_tenant_id,
        reason,
    )
    audit(
        context,
        EventSpec(
            action=action or AuditAction.SCOPE_VIOLATION,
            category=AuditCategory.SECURITY,
            severity=AuditSeverity.CRITICAL,
            outcome=AuditOutcome.FAILURE,
            outcome_reason=reason,
            target_type=target_type,
            target_id=target_id,
            metadata={
                "active_tenant_id": context.active_tenant_id,
                "target_tenant_id": target_tenant_id,
            },
        ),
    )


def _record_cross_tenant(context, model, *, operation: str) -> None:
    if context.is_system:
        # system jobs record their own run entry
        logger.info("system cross-tenant %s on %s", operation, model._meta.label)
        return

    from pm_core.audit.constants import AuditAction
    from pm_core.audit.models import AuditCategory, AuditSeverity
    from pm_core.audit.recorder import EventSpec, audit

    audit(
        context,
        EventSpec(
            action=AuditAction.SCOPE_CROSS_TENANT,
            category=AuditCategory.AUTHORIZATION,
            severity=AuditSeverity.WARNING,
            target_type=model.__name__,
            metadata={"operation": operation},
        ),
    )


# ---------------------------------------------------------------------------
# Wrappers
# ---------------------------------------------------------------------------

def tenant_filter(context, model, *, cross_tenant: bool = False) -> Optional[models.Q]:
    """
    The constraint to conjoin for `model` under `context`.
    Returns None only for global models or an audited cross-tenant read.
    """
    if scope_kind_for(model) == GLOBAL:
        return None

    field_name = tenant_field_for(model)

    if cross_tenant:
        if not context.is_global:
            record_scope_violation(
                context,
                reason="cross_tenant_without_global_scope",
                target_type=model.__name__,
            )
            raise ScopeViolation(reason="cross_tenant_without_global_scope", target_type=model.__name__)
        _record_cross_tenant(context, model, operation="read")
        return None

    if context.active_tenant_id is not None:
        return models.Q(**{field_name: context.active_tenant_id})

    if context.is_global:
        # The sentinel never becomes a filter value.
        raise NoTenantContext()

    if not context.authorized_tenant_ids:
        # No tenant could satisfy the read; an empty result would hide that.
        record_scope_violation(
            context,
            reason="no_authorized_tenant",
            target_type=model.__name__,
        )
        raise ScopeViolation(reason="no_authorized_tenant", target_type=model.__name__)

    return models.Q(**{f"{field_name}__in": sorted(context.authorized_tenant_ids, key=str)})


def with_tenant_scope(context, queryset, *, cross_tenant: bool = False):
    """READ: restrict a queryset to the caller's tenant(s)."""
    constraint = tenant_filter(context, queryset.model, cross_tenant=cross_tenant)
    if constraint is None:
        return queryset
    return queryset.filter(constraint)


def with_tenant_assignment(context, model, payload: dict) -> dict:
    """
    CREATE: return a copy of payload whose tenant is the active tenant.

    A caller-supplied tenant id that differs is never honoured; it is
    overwritten and recorded as a bypass attempt.
    """
    from pm_core.audit.constants import AuditAction

    data = dict(payload or {})
    if scope_kind_for(model) == GLOBAL:
        return data

    field_name = tenant_field_for(model)
    active = context.require_tenant()

    supplied = data.get(field_name)
    if supplied not in (None, "") and str(supplied) != str(active):
        record_scope_violation(
            context,
            action=AuditAction.SCOPE_TENANT_OVERRIDE,
            reason="payload_tenant_overridden",
            target_type=model.__name__,
            target_tenant_id=supplied,
        )

    data[field_name] = active
    return data


def with_tenant_guard(context, queryset):
    """UPDATE / DELETE: only rows of the active tenant can be targeted."""
    model = queryset.model
    if scope_kind_for(model) == GLOBAL:
        return queryset
    active = context.require_tenant()
    return queryset.filter(**{tenant_field_for(model): active})


def get_scoped(context, model, value, *, field_name: str = "pk", cross_tenant: bool = False):
    """
    One row by key, inside the caller's scope.

    Absent everywhere -> NotFound. Present in a foreign tenant ->
    ScopeViolation (rendered as the same 404) plus a CRITICAL audit entry.
    """
    manager = model._default_manager
    lookup = {field_name: value}

    try:
        obj = with_tenant_scope(context, manager.all(), cross_tenant=cross_tenant).filter(**lookup).first()
        if obj is not None:
            return obj
        if scope_kind_for(model) == GLOBAL:
            raise NotFound()

        tenant_field = tenant_field_for(model)
        foreign_tenant = manager.filter(**lookup).values_list(tenant_field, flat=True).first()
    except (ValueError, DjangoValidationError):
        # malformed key: nothing could match
        raise NotFound()

    if foreign_tenant is None:
        raise NotFound()

    record_scope_violation(
        context,
        reason="object_outside_tenant_scope",
        target_type=model.__name__,
        target_id=value,
        target_tenant_id=foreign_tenant,
    )
    raise ScopeViolation(
        reason="object_outside_tenant_scope",
        target_type=model.__name__,
        target_id=value,
        target_tenant_id=foreign_tenant,
    )


# ---------------------------------------------------------------------------
# Operation dispatch
# ---------------------------------------------------------------------------

class OperationKind:
    READ = "READ"
    CREATE = "CREATE"
    MUTATE = "MUTATE"


@dataclass(frozen=True)
class Operation:
    kind: str
    model: Any
    queryset: Any = None
    payload: dict = field(default_factory=dict)
    cross_tenant: bool = False


def scope(context, operation: Operation):
    """
    Rewrite an operation so it only reaches rows the context may touch.
    READ/MUTATE return a queryset; CREATE returns the assigned payload.
    """
    qs = operation.queryset if operation.queryset is not None else operation.model._default_manager.all()

    if operation.kind == OperationKind.READ:
        return with_tenant_scope(context, qs, cross_tenant=operation.cross_tenant)
    if operation.kind == OperationKind.CREATE:
        return with_tenant_assignment(context, operation.model, operation.payload)
    if operation.kind == OperationKind.MUTATE:
        return with_tenant_guard(context, qs)
    raise ValueError(f"Unknown operation kind: {operation.kind!r}")
