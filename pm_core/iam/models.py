# pm_core/iam/models.py
import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone

from pm_core.common.models import TimeStampedModel


class RoleScope(models.TextChoices):
    GLOBAL = "GLOBAL", "Global"
    MULTI_TENANT = "MULTI_TENANT", "Multi-tenant"
    SINGLE_TENANT = "SINGLE_TENANT", "Single tenant"


class Role(TimeStampedModel):
    """
    Named bundle of permission codes.

    The role catalog is platform-wide; tenancy lives on RoleAssignment.
    System roles keep their structure (code, scope, permissions) and are
    never deleted.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    name = models.CharField(max_length=128)
    code = models.SlugField(max_length=64, unique=True)
    scope_kind = models.CharField(max_length=16, choices=RoleScope.choices, default=RoleScope.SINGLE_TENANT)

    # ordered list of PermissionCode values
    permissions = models.JSONField(default=list, blank=True)

    is_system = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True, db_index=True)

    class Meta:
        db_table = "iam_role"
        indexes = [
            models.Index(fields=["scope_kind", "is_active"]),
        ]

    def __str__(self) -> str:
        return self.code

    def delete(self, *args, **kwargs):
        if self.is_system:
            from pm_core.common.api.exceptions import ConflictError

            raise ConflictError("System roles cannot be deleted.")
        return super().delete(*args, **kwargs)


class RoleAssignment(TimeStampedModel):
    """
    (user, role, tenant) grant. tenant_id is NULL only for GLOBAL roles.
    Destroyed on revoke or by the expiry sweep.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    user_id = models.BigIntegerField(db_index=True)
    role = models.ForeignKey(Role, on_delete=models.PROTECT, related_name="assignments")
    tenant_id = models.UUIDField(null=True, blank=True, db_index=True)

    expires_at = models.DateTimeField(null=True, blank=True, db_index=True)
    granted_by_user_id = models.BigIntegerField(null=True, blank=True)

    class Meta:
        db_table = "iam_role_assignment"
        constraints = [
            models.UniqueConstraint(
                fields=["user_id", "role", "tenant_id"],
                name="uq_role_assignment_user_role_tenant",
            ),
            # NULLs are distinct in unique indexes; cover the GLOBAL case explicitly.
            models.UniqueConstraint(
                fields=["user_id", "role"],
                condition=Q(tenant_id__isnull=True),
                name="uq_role_assignment_user_role_global",
            ),
        ]
        indexes = [
            models.Index(fields=["user_id", "tenant_id"]),
        ]

    def __str__(self) -> str:
        return f"{self.user_id}:{self.role_id}@{self.tenant_id or 'GLOBAL'}"

    def is_expired(self, at=None) -> bool:
        at = at or timezone.now()
        return self.expires_at is not None and self.expires_at <= at
