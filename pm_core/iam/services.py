# pm_core/iam/services.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from pm_core.audit.constants import AuditAction
from pm_core.audit.models import AuditCategory
from pm_core.audit.recorder import EventSpec, audit
from pm_core.common.api.exceptions import ConflictError, Forbidden
from pm_core.common.scope import with_tenant_assignment, with_tenant_guard
from pm_core.iam.authz import record_denied
from pm_core.iam.models import Role, RoleAssignment, RoleScope
from pm_core.iam.permissions import ALL_PERMISSION_CODES, SYSTEM_ROLE_TEMPLATES, PermissionCode
from pm_core.iam.resolver import resolve_permissions

logger = logging.getLogger(__name__)


def _clean_permissions(codes: Iterable[str]) -> list[str]:
    """Validate against the closed set; keep first-seen order, drop duplicates."""
    cleaned: list[str] = []
    unknown: list[str] = []
    for code in codes or []:
        code = str(code)
        if code not in ALL_PERMISSION_CODES:
            unknown.append(code)
        elif code not in cleaned:
            cleaned.append(code)
    if unknown:
        raise ValidationError({"permissions": [f"Unknown permission code: {c}" for c in unknown]})
    return cleaned


def _role_snapshot(role: Role) -> dict:
    return {
        "code": role.code,
        "name": role.name,
        "scope_kind": role.scope_kind,
        "permissions": list(role.permissions or []),
        "is_active": role.is_active,
    }


def _assignment_snapshot(a: RoleAssignment) -> dict:
    return {
        "user_id": a.user_id,
        "role_code": a.role.code,
        "tenant_id": str(a.tenant_id) if a.tenant_id else None,
        "expires_at": a.expires_at.isoformat() if a.expires_at else None,
    }


def _role_change(context, *, action: str, target_type: str, target_id, before=None, after=None,
                 tenant_id: Optional[UUID] = None) -> None:
    audit(
        context,
        EventSpec(
            action=action,
            category=AuditCategory.ROLE_CHANGE,
            target_type=target_type,
            target_id=target_id,
            before=before,
            after=after,
            tenant_id=tenant_id,
        ),
    )


class RoleService:
    @staticmethod
    @transaction.atomic
    def create_role(*, context, code: str, name: str, scope_kind: str, permissions: Iterable[str]) -> Role:
        if scope_kind not in RoleScope.values:
            raise ValidationError({"scope_kind": f"Unknown scope kind: {scope_kind}"})

        try:
            with transaction.atomic():
                role = Role.objects.create(
                    code=code,
                    name=name,
                    scope_kind=scope_kind,
                    permissions=_clean_permissions(permissions),
                    is_system=False,
                )
        except IntegrityError:
            raise ConflictError("A role with this code already exists.")

        _role_change(context, action=AuditAction.ROLE_CREATED, target_type="Role", target_id=role.id,
                     after=_role_snapshot(role))
        return role

    @staticmethod
    @transaction.atomic
    def set_permissions(*, context, role: Role, permissions: Iterable[str]) -> Role:
        if role.is_system:
            raise ConflictError("System role permissions cannot be changed.")

        before = _role_snapshot(role)
        role.permissions = _clean_permissions(permissions)
        role.save(update_fields=["permissions", "updated_at"])

        _role_change(context, action=AuditAction.ROLE_PERMISSIONS_CHANGED, target_type="Role", target_id=role.id,
                     before=before, after=_role_snapshot(role))
        return role

    @staticmethod
    @transaction.atomic
    def update_role(*, context, role: Role, name: Optional[str] = None, is_active: Optional[bool] = None) -> Role:
        if role.is_system and is_active is False:
            raise ConflictError("System roles cannot be deactivated.")

        before = _role_snapshot(role)
        if name is not None:
            role.name = name
        if is_active is not None:
            role.is_active = is_active
        role.save(update_fields=["name", "is_active", "updated_at"])

        _role_change(context, action=AuditAction.ROLE_PERMISSIONS_CHANGED, target_type="Role", target_id=role.id,
                     before=before, after=_role_snapshot(role))
        return role

    @staticmethod
    @transaction.atomic
    def delete_role(*, context, role: Role) -> None:
        if role.is_system:
            raise ConflictError("System roles cannot be deleted.")
        if role.assignments.exists():
            raise ConflictError("Role is still assigned; revoke its assignments first.")

        before = _role_snapshot(role)
        role_id = role.id
        role.delete()

        _role_change(context, action=AuditAction.ROLE_DELETED, target_type="Role", target_id=role_id, before=before)

    @staticmethod
    @transaction.atomic
    def ensure_system_roles() -> dict[str, int]:
        """
        Create missing system roles and restore the structure of existing
        ones (scope, permissions, active flag) to the shipped templates.
        """
        created = 0
        updated = 0
        for tpl in SYSTEM_ROLE_TEMPLATES:
            perms = [str(p) for p in tpl["permissions"]]
            role, was_created = Role.objects.get_or_create(
                code=tpl["code"],
                defaults={
                    "name": tpl["name"],
                    "scope_kind": tpl["scope_kind"],
                    "permissions": perms,
                    "is_system": True,
                    "is_active": True,
                },
            )
            if was_created:
                created += 1
                continue

            changed = (
                role.scope_kind != tpl["scope_kind"]
                or list(role.permissions or []) != perms
                or not role.is_system
                or not role.is_active
            )
            if changed:
                role.scope_kind = tpl["scope_kind"]
                role.permissions = perms
                role.is_system = True
                role.is_active = True
                role.save(update_fields=["scope_kind", "permissions", "is_system", "is_active", "updated_at"])
                updated += 1

        return {"created": created, "updated": updated}


class AssignmentService:
    @staticmethod
    def _check_grantable(context, role: Role, *, tenant_id: Optional[UUID]) -> None:
        """A grantor can only hand out permissions it holds itself (global callers excepted)."""
        if context.is_global:
            return
        if role.scope_kind == RoleScope.GLOBAL:
            record_denied(context, PermissionCode.ASSIGNMENTS_MANAGE, target_type="Role", target_id=role.id)
            raise Forbidden("Only global administrators can grant global roles.")

        missing = set(role.permissions or []) - resolve_permissions(context)
        if missing:
            logger.warning(
                "escalation refused: user=%s tenant=%s role=%s missing=%s",
                context.user_id,
                tenant_id,
                role.code,
                sorted(missing),
            )
            record_denied(context, sorted(missing)[0], target_type="Role", target_id=role.id)
            raise Forbidden("You cannot grant a role with permissions you do not hold.")

    @staticmethod
    def grant(
        *,
        context,
        user_id: int,
        role: Role,
        tenant_id: Optional[UUID] = None,
        expires_at: Optional[datetime] = None,
    ) -> tuple[RoleAssignment, bool]:
        """
        Idempotent: granting an existing (user, role, tenant) returns it unchanged.
        Non-global grants always land in the grantor's active tenant.

        Scope and escalation checks run before the write transaction so the
        entries they record survive the refusal.
        """
        if not role.is_active:
            raise ValidationError({"role": "Role is not active."})
        if expires_at is not None and expires_at <= timezone.now():
            raise ValidationError({"expires_at": "Must be in the future."})
        if not get_user_model().objects.filter(pk=user_id).exists():
            raise ValidationError({"user_id": "Unknown user."})

        if role.scope_kind == RoleScope.GLOBAL:
            if tenant_id is not None:
                raise ValidationError({"tenant_id": "Global roles are granted without a tenant."})
            target_tenant = None
        else:
            target_tenant = with_tenant_assignment(context, RoleAssignment, {"tenant_id": tenant_id})["tenant_id"]

        AssignmentService._check_grantable(context, role, tenant_id=target_tenant)

        existing = RoleAssignment.objects.filter(user_id=user_id, role=role, tenant_id=target_tenant).first()
        if existing is not None:
            return existing, False

        with transaction.atomic():
            if role.scope_kind == RoleScope.SINGLE_TENANT:
                elsewhere = (
                    RoleAssignment.objects.select_for_update()
                    .filter(user_id=user_id, role=role)
                    .exclude(tenant_id=target_tenant)
                    .exists()
                )
                if elsewhere:
                    raise ConflictError("This role can be held in only one tenant; revoke the other assignment first.")

            assignment = RoleAssignment.objects.create(
                user_id=user_id,
                role=role,
                tenant_id=target_tenant,
                expires_at=expires_at,
                granted_by_user_id=context.user_id,
            )

            _role_change(context, action=AuditAction.ROLE_GRANTED, target_type="User", target_id=user_id,
                         after=_assignment_snapshot(assignment), tenant_id=target_tenant)
        return assignment, True

    @staticmethod
    def revoke(*, context, assignment: RoleAssignment) -> None:
        role = assignment.role
        AssignmentService._check_grantable(context, role, tenant_id=assignment.tenant_id)

        before = _assignment_snapshot(assignment)
        with transaction.atomic():
            if assignment.tenant_id is None:
                # GLOBAL assignment; only global callers get past _check_grantable
                deleted, _ = RoleAssignment.objects.filter(pk=assignment.pk, tenant_id__isnull=True).delete()
            else:
                guard_ctx = context
                if context.is_global and context.active_tenant_id is None:
                    guard_ctx = context.narrowed_to(assignment.tenant_id)
                deleted, _ = with_tenant_guard(guard_ctx, RoleAssignment.objects.filter(pk=assignment.pk)).delete()

            if not deleted:
                raise ConflictError("Assignment was already revoked.")

            _role_change(context, action=AuditAction.ROLE_REVOKED, target_type="User", target_id=assignment.user_id,
                         before=before, tenant_id=assignment.tenant_id)

    @staticmethod
    def expire_assignments(*, context, now: Optional[datetime] = None) -> int:
        """Delete assignments whose expiry has passed; one ROLE_CHANGE entry each."""
        now = now or timezone.now()
        expired = list(
            RoleAssignment.objects.select_related("role").filter(expires_at__isnull=False, expires_at__lte=now)
        )
        count = 0
        for a in expired:
            with transaction.atomic():
                deleted, _ = RoleAssignment.objects.filter(pk=a.pk).delete()
                if not deleted:
                    continue
                _role_change(context, action=AuditAction.ROLE_EXPIRED, target_type="User", target_id=a.user_id,
                             before=_assignment_snapshot(a), tenant_id=a.tenant_id)
                count += 1
        if count:
            logger.info("expired %d role assignment(s)", count)
        return count
