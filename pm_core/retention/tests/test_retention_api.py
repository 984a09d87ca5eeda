from datetime import timedelta

import pytest
from django.utils import timezone

from pm_core.audit.constants import AuditAction
from pm_core.retention.models import (
    LegalHold,
    RecordState,
    RetentionAction,
    RetentionActionStatus,
    RetentionActionType,
    RetentionPolicy,
    RetentionRecord,
)
from pm_core.tests.helpers import entries, scoped

pytestmark = pytest.mark.django_db


@pytest.fixture
def officer(client_for, compliance_officer):
    return client_for(compliance_officer)


@pytest.fixture
def pending_action(tenant):
    record = RetentionRecord.objects.create(
        tenant_id=tenant.id,
        record_class="Patient",
        record_key="00000000-0000-0000-0000-000000000001",
        created_at_basis=timezone.now() - timedelta(days=4000),
        state=RecordState.PENDING_DESTRUCTION,
    )
    action = RetentionAction.objects.create(
        tenant_id=tenant.id,
        action_type=RetentionActionType.DESTRUCTION,
        status=RetentionActionStatus.PENDING_APPROVAL,
        record_class="Patient",
    )
    action.records.set([record])
    return action


def test_hold_lifecycle_over_api(officer, tenant, other_tenant):
    created = officer.post(
        "/api/v1/retention/holds/",
        {"reason": "subpoena 2026-118", "record_classes": ["Patient"], "tenant_id": str(other_tenant.id)},
        format="json",
    )
    assert created.status_code == 201, created.data
    assert created.data["tenant_id"] == str(tenant.id)
    assert created.data["version"] == 1
    # the forged tenant was overwritten and recorded
    assert len(entries(AuditAction.SCOPE_TENANT_OVERRIDE)) == 1

    hold_id = created.data["id"]
    released = officer.post(f"/api/v1/retention/holds/{hold_id}/release/", {"reason": "settled", "version": 1},
                            format="json")
    assert released.status_code == 200, released.data
    assert released.data["status"] == "RELEASED"
    assert released.data["version"] == 2

    stale = officer.post(f"/api/v1/retention/holds/{hold_id}/release/", {"reason": "again", "version": 1},
                         format="json")
    assert stale.status_code == 409
    assert stale.data["error"]["code"] == "conflict"


def test_hold_requires_reason_and_known_class(officer):
    no_reason = officer.post("/api/v1/retention/holds/", {"reason": "  "}, format="json")
    unknown = officer.post("/api/v1/retention/holds/", {"reason": "x", "record_classes": ["Invoice"]}, format="json")

    assert no_reason.status_code == 400
    assert unknown.status_code == 400
    assert not LegalHold.objects.exists()


def test_holds_need_hold_permission(client_for, make_user, grant, tenant):
    desk = make_user("desk")
    grant(desk, "front_desk", tenant)

    resp = client_for(desk).post("/api/v1/retention/holds/", {"reason": "x"}, format="json")

    assert resp.status_code == 403


def test_approve_and_execute_over_api(officer, compliance_officer, pending_action, tenant):
    approved = officer.post(f"/api/v1/retention/actions/{pending_action.id}/approve/", {"note": "ok"},
                            format="json")
    assert approved.status_code == 200, approved.data
    assert approved.data["status"] == "APPROVED"
    assert approved.data["approved_by_user_id"] == compliance_officer.id
    assert approved.data["record_count"] == 1

    executed = officer.post(f"/api/v1/retention/actions/{pending_action.id}/execute/", {}, format="json")
    assert executed.status_code == 200, executed.data
    assert executed.data["status"] == "EXECUTED"
    assert executed.data["certificate_reference"].startswith("DC-")


def test_execute_under_hold_is_409_hold_active(officer, pending_action):
    officer.post(f"/api/v1/retention/actions/{pending_action.id}/approve/", {}, format="json")
    hold = officer.post("/api/v1/retention/holds/", {"reason": "litigation"}, format="json")

    resp = officer.post(f"/api/v1/retention/actions/{pending_action.id}/execute/", {}, format="json")

    assert resp.status_code == 409
    error = resp.data["error"]
    assert error["code"] == "hold_active"
    assert error["details"]["action_id"] == str(pending_action.id)
    assert error["details"]["hold_ids"] == [hold.data["id"]]

    pending_action.refresh_from_db()
    assert pending_action.status == RetentionActionStatus.DEFERRED


def test_cancel_over_api(officer, pending_action):
    resp = officer.post(f"/api/v1/retention/actions/{pending_action.id}/cancel/", {"reason": "keep"},
                        format="json")

    assert resp.status_code == 200
    assert resp.data["status"] == "CANCELLED"
    assert resp.data["cancelled_reason"] == "keep"


def test_clinic_admin_can_view_but_not_approve(api_client, pending_action):
    listed = api_client.get("/api/v1/retention/actions/", {"status": "PENDING_APPROVAL"})
    assert listed.status_code == 200
    assert listed.data["count"] == 1

    resp = api_client.post(f"/api/v1/retention/actions/{pending_action.id}/approve/", {}, format="json")
    assert resp.status_code == 403


def test_foreign_tenant_action_is_404(client_for, other_clinic_admin, pending_action):
    resp = client_for(other_clinic_admin).get(f"/api/v1/retention/actions/{pending_action.id}/")

    assert resp.status_code == 404
    assert len(entries(AuditAction.SCOPE_VIOLATION)) == 1


def test_global_caller_reaches_any_tenant_action(client_for, super_admin, pending_action):
    client = client_for(super_admin)

    resp = client.post(f"/api/v1/retention/actions/{pending_action.id}/approve/", {}, format="json")

    assert resp.status_code == 200, resp.data
    assert len(entries(AuditAction.SCOPE_CROSS_TENANT)) == 1

    listed = client.get("/api/v1/retention/actions/", {"all_tenants": "true"})
    assert listed.status_code == 200
    assert listed.data["count"] == 1


def test_report(officer, tenant, other_tenant):
    now = timezone.now()
    RetentionPolicy.objects.create(record_class="Patient", retention_days=2555, archive_after_days=365)
    RetentionRecord.objects.create(tenant_id=tenant.id, record_class="Patient", record_key="p-old",
                                   created_at_basis=now - timedelta(days=2550))
    RetentionRecord.objects.create(tenant_id=tenant.id, record_class="Patient", record_key="p-new",
                                   created_at_basis=now)
    RetentionRecord.objects.create(tenant_id=tenant.id, record_class="Patient", record_key="p-gone",
                                   created_at_basis=now - timedelta(days=2550), state=RecordState.DESTROYED)
    RetentionRecord.objects.create(tenant_id=other_tenant.id, record_class="Patient", record_key="p-b",
                                   created_at_basis=now - timedelta(days=2550))
    LegalHold.objects.create(tenant_id=tenant.id, record_classes=["Patient"], reason="dispute")

    resp = officer.get("/api/v1/retention/records/report/", {"days": "30"})

    assert resp.status_code == 200, resp.data
    data = resp.data
    assert data["total"] == 3
    assert data["by_state"]["ACTIVE"] == 2
    assert data["by_state"]["DESTROYED"] == 1
    assert data["on_hold"] == 2
    assert data["expiring_soon"] == 1
    assert data["expiring_within_days"] == 30
    assert data["active_holds"] == 1

    records = officer.get("/api/v1/retention/records/", {"state": "ACTIVE"})
    assert records.data["count"] == 2


def test_report_rejects_bad_window(officer):
    resp = officer.get("/api/v1/retention/records/report/", {"days": "soon"})

    assert resp.status_code == 400
