# pm_core/iam/permissions.py
"""
Closed set of permission codes.

Business code asks `has_permission(context, PermissionCode.X)`; it never
matches on role names. Adding a capability means adding a code here and
granting it to roles, without touching call sites.
"""
from __future__ import annotations

from django.db import models


class PermissionCode(models.TextChoices):
    # Reference consumer (patients)
    PATIENTS_VIEW = "patients.view", "View patients"
    PATIENTS_CREATE = "patients.create", "Create patients"
    PATIENTS_UPDATE = "patients.update", "Update patients"
    PATIENTS_DELETE = "patients.delete", "Delete patients"

    # Audit trail
    AUDIT_VIEW = "audit.view", "View audit trail"
    AUDIT_CORRECT = "audit.correct", "Append audit corrections"

    # Access management
    ROLES_MANAGE = "iam.roles.manage", "Manage roles"
    ASSIGNMENTS_MANAGE = "iam.assignments.manage", "Grant and revoke roles"

    # Retention & legal holds
    RETENTION_POLICIES_MANAGE = "retention.policies.manage", "Manage retention policies"
    RETENTION_ACTIONS_VIEW = "retention.actions.view", "View retention actions"
    RETENTION_ACTIONS_APPROVE = "retention.actions.approve", "Approve retention actions"
    RETENTION_ACTIONS_EXECUTE = "retention.actions.execute", "Execute retention actions"
    LEGAL_HOLDS_MANAGE = "retention.holds.manage", "Create and release legal holds"


ALL_PERMISSION_CODES = frozenset(PermissionCode.values)


def is_known_permission(code: str) -> bool:
    return code in ALL_PERMISSION_CODES


# System role templates, seeded by `manage.py ensure_roles`.
SYSTEM_ROLE_TEMPLATES = [
    {
        "code": "super_admin",
        "name": "Super administrator",
        "scope_kind": "GLOBAL",
        "permissions": sorted(ALL_PERMISSION_CODES),
    },
    {
        "code": "compliance_officer",
        "name": "Compliance officer",
        "scope_kind": "MULTI_TENANT",
        "permissions": [
            PermissionCode.AUDIT_VIEW,
            PermissionCode.AUDIT_CORRECT,
            PermissionCode.RETENTION_ACTIONS_VIEW,
            PermissionCode.RETENTION_ACTIONS_APPROVE,
            PermissionCode.RETENTION_ACTIONS_EXECUTE,
            PermissionCode.LEGAL_HOLDS_MANAGE,
        ],
    },
    {
        "code": "clinic_admin",
        "name": "Clinic administrator",
        "scope_kind": "SINGLE_TENANT",
        "permissions": [
            PermissionCode.PATIENTS_VIEW,
            PermissionCode.PATIENTS_CREATE,
            PermissionCode.PATIENTS_UPDATE,
            PermissionCode.PATIENTS_DELETE,
            PermissionCode.AUDIT_VIEW,
            PermissionCode.ASSIGNMENTS_MANAGE,
            PermissionCode.RETENTION_ACTIONS_VIEW,
            PermissionCode.LEGAL_HOLDS_MANAGE,
        ],
    },
    {
        "code": "clinician",
        "name": "Clinician",
        "scope_kind": "MULTI_TENANT",
        "permissions": [
            PermissionCode.PATIENTS_VIEW,
            PermissionCode.PATIENTS_CREATE,
            PermissionCode.PATIENTS_UPDATE,
        ],
    },
    {
        "code": "front_desk",
        "name": "Front desk",
        "scope_kind": "SINGLE_TENANT",
        "permissions": [
            PermissionCode.PATIENTS_VIEW,
            PermissionCode.PATIENTS_CREATE,
        ],
    },
    {
        "code": "read_only",
        "name": "Read only",
        "scope_kind": "MULTI_TENANT",
        "permissions": [
            PermissionCode.PATIENTS_VIEW,
        ],
    },
]
