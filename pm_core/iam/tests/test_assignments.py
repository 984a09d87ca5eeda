from datetime import timedelta

import pytest
from django.utils import timezone

from pm_core.audit.constants import AuditAction
from pm_core.audit.models import AuditCategory, AuditSeverity
from pm_core.common.api.exceptions import ConflictError, Forbidden
from pm_core.iam.models import RoleAssignment
from pm_core.iam.permissions import PermissionCode
from pm_core.iam.resolver import compute_permissions
from pm_core.iam.services import AssignmentService
from pm_core.tests.helpers import entries, scoped

pytestmark = pytest.mark.django_db


def test_grant_then_revoke_restores_permission_set(ctx_for, clinic_admin, make_user, system_roles, tenant):
    ctx = ctx_for(clinic_admin, tenant)
    target = make_user("desk")
    before = compute_permissions(user_id=target.id, tenant_id=tenant.id)

    assignment, created = AssignmentService.grant(context=ctx, user_id=target.id, role=system_roles["front_desk"])

    assert created
    assert assignment.tenant_id == tenant.id
    assert assignment.granted_by_user_id == clinic_admin.id
    assert PermissionCode.PATIENTS_CREATE in compute_permissions(user_id=target.id, tenant_id=tenant.id)

    AssignmentService.revoke(context=ctx, assignment=assignment)

    assert compute_permissions(user_id=target.id, tenant_id=tenant.id) == before

    granted = entries(AuditAction.ROLE_GRANTED)
    revoked = entries(AuditAction.ROLE_REVOKED)
    assert len(granted) == 1 and len(revoked) == 1
    assert granted[0].category == AuditCategory.ROLE_CHANGE
    assert granted[0].after["role_code"] == "front_desk"
    assert revoked[0].before["role_code"] == "front_desk"
    assert revoked[0].tenant_id == tenant.id


def test_grant_is_idempotent(ctx_for, clinic_admin, make_user, system_roles, tenant):
    ctx = ctx_for(clinic_admin, tenant)
    target = make_user("desk")

    first, created_first = AssignmentService.grant(context=ctx, user_id=target.id, role=system_roles["front_desk"])
    second, created_second = AssignmentService.grant(context=ctx, user_id=target.id, role=system_roles["front_desk"])

    assert created_first and not created_second
    assert first.pk == second.pk
    assert len(entries(AuditAction.ROLE_GRANTED)) == 1


def test_grant_lands_in_active_tenant_even_if_payload_names_another(
    ctx_for, clinic_admin, make_user, system_roles, tenant, other_tenant
):
    ctx = ctx_for(clinic_admin, tenant)
    target = make_user("desk")

    assignment, _ = AssignmentService.grant(
        context=ctx, user_id=target.id, role=system_roles["front_desk"], tenant_id=other_tenant.id
    )

    assert assignment.tenant_id == tenant.id
    overrides = entries(AuditAction.SCOPE_TENANT_OVERRIDE)
    assert len(overrides) == 1
    assert overrides[0].severity == AuditSeverity.CRITICAL


def test_grantor_cannot_escalate(ctx_for, clinic_admin, make_user, system_roles, tenant):
    ctx = ctx_for(clinic_admin, tenant)
    target = make_user("wannabe")

    # compliance_officer carries approval permissions clinic_admin lacks
    with pytest.raises(Forbidden):
        AssignmentService.grant(context=ctx, user_id=target.id, role=system_roles["compliance_officer"])

    assert not RoleAssignment.objects.filter(user_id=target.id).exists()
    assert len(entries(AuditAction.ACCESS_DENIED)) == 1


def test_only_global_callers_grant_global_roles(ctx_for, clinic_admin, make_user, system_roles, tenant):
    with pytest.raises(Forbidden):
        AssignmentService.grant(
            context=ctx_for(clinic_admin, tenant), user_id=make_user("x").id, role=system_roles["super_admin"]
        )


def test_single_tenant_role_cannot_be_held_twice(ctx_for, super_admin, clinic_admin, system_roles, other_tenant):
    ctx = ctx_for(super_admin, other_tenant)

    with pytest.raises(ConflictError):
        AssignmentService.grant(context=ctx, user_id=clinic_admin.id, role=system_roles["clinic_admin"])

    assert RoleAssignment.objects.filter(user_id=clinic_admin.id).count() == 1


def test_multi_tenant_role_can_span_tenants(ctx_for, super_admin, make_user, grant, system_roles, tenant, other_tenant):
    user = make_user("roamer")
    grant(user, "clinician", tenant)

    _, created = AssignmentService.grant(
        context=ctx_for(super_admin, other_tenant), user_id=user.id, role=system_roles["clinician"]
    )

    assert created
    assert RoleAssignment.objects.filter(user_id=user.id).count() == 2


def test_expire_assignments_sweeps_and_records(make_user, grant, system_ctx, tenant):
    user = make_user("temp")
    grant(user, "front_desk", tenant, expires_at=timezone.now() - timedelta(seconds=5))
    keep = grant(user, "read_only", tenant, expires_at=timezone.now() + timedelta(days=1))

    expired = AssignmentService.expire_assignments(context=system_ctx)

    assert expired == 1
    assert list(RoleAssignment.objects.filter(user_id=user.id)) == [keep]
    recorded = entries(AuditAction.ROLE_EXPIRED)
    assert len(recorded) == 1
    assert recorded[0].tenant_id == tenant.id


def test_assignment_api_round_trip(api_client, make_user, tenant):
    target = make_user("desk")

    resp = api_client.post(
        "/api/v1/iam/assignments/", {"user_id": target.id, "role": "front_desk"}, format="json", **scoped(tenant)
    )
    assert resp.status_code == 201, resp.data
    assert resp.data["role_code"] == "front_desk"
    assert resp.data["tenant_id"] == str(tenant.id)

    again = api_client.post(
        "/api/v1/iam/assignments/", {"user_id": target.id, "role": "front_desk"}, format="json", **scoped(tenant)
    )
    assert again.status_code == 200

    listed = api_client.get("/api/v1/iam/assignments/", {"user_id": target.id}, **scoped(tenant))
    assert listed.status_code == 200
    assert listed.data["count"] == 1

    deleted = api_client.delete(f"/api/v1/iam/assignments/{resp.data['id']}/", **scoped(tenant))
    assert deleted.status_code == 204
    assert not RoleAssignment.objects.filter(user_id=target.id).exists()


def test_assignment_api_unknown_role(api_client, make_user, tenant):
    resp = api_client.post(
        "/api/v1/iam/assignments/", {"user_id": make_user("x").id, "role": "wizard"}, format="json", **scoped(tenant)
    )

    assert resp.status_code == 400
    assert resp.data["error"]["code"] == "validation_error"


def test_assignment_api_cannot_revoke_other_tenant(api_client, other_clinic_admin, other_tenant, tenant):
    foreign = RoleAssignment.objects.get(user_id=other_clinic_admin.id)

    resp = api_client.delete(f"/api/v1/iam/assignments/{foreign.id}/", **scoped(tenant))

    assert resp.status_code == 404
    assert RoleAssignment.objects.filter(pk=foreign.pk).exists()
    assert len(entries(AuditAction.SCOPE_VIOLATION)) == 1
