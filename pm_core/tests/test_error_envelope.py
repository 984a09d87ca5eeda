import pytest
from rest_framework.test import APIClient

from pm_core.audit.constants import AuditAction
from pm_core.audit.models import AuditSeverity
from pm_core.patients.models import Patient
from pm_core.tests.helpers import entries, scoped

pytestmark = pytest.mark.django_db


def _assert_envelope(resp, status_code, code):
    assert resp.status_code == status_code, resp.data
    body = resp.data
    assert set(body["error"].keys()) == {"code", "message", "details", "request_id"}
    assert body["error"]["code"] == code
    assert body["error"]["request_id"]


def test_unauthenticated_request_returns_401_envelope(tenant):
    resp = APIClient().get("/api/v1/patients/", **scoped(tenant))
    _assert_envelope(resp, 401, "not_authenticated")


def test_invalid_tenant_header_returns_400_envelope(api_client):
    resp = api_client.get("/api/v1/patients/", HTTP_X_TENANT_ID="not-a-uuid")
    _assert_envelope(resp, 400, "validation_error")


def test_tenant_header_selects_tenant_for_multi_tenant_user(client_for, clinician, tenant):
    resp = client_for(clinician).get("/api/v1/patients/", **{"HTTP_X_TENANT_ID": str(tenant.id)})
    assert resp.status_code == 200, resp.data


def test_missing_tenant_for_multi_tenant_user_returns_no_tenant_context(client_for, clinician):
    resp = client_for(clinician).get("/api/v1/patients/")
    _assert_envelope(resp, 400, "no_tenant_context")


def test_unauthorized_tenant_header_is_a_generic_404(api_client, other_tenant, clinic_admin):
    resp = api_client.get("/api/v1/patients/", **scoped(other_tenant))

    _assert_envelope(resp, 404, "not_found")
    assert resp.data["error"]["message"] == "Not found."
    # nothing about the other tenant in the response
    assert str(other_tenant.id) not in str(resp.data)

    recorded = entries(AuditAction.SCOPE_VIOLATION)
    assert len(recorded) == 1
    assert recorded[0].severity == AuditSeverity.CRITICAL
    assert recorded[0].actor_user_id == clinic_admin.id


def test_missing_permission_returns_403_and_warning(client_for, make_user, grant, tenant):
    desk = make_user("desk")
    grant(desk, "front_desk", tenant)
    patient = Patient.objects.create(tenant_id=tenant.id, full_name="P", mrn="M-1")

    resp = client_for(desk).delete(f"/api/v1/patients/{patient.id}/", **scoped(tenant))

    _assert_envelope(resp, 403, "permission_denied")
    denied = entries(AuditAction.ACCESS_DENIED)
    assert len(denied) == 1
    assert denied[0].severity == AuditSeverity.WARNING
    assert denied[0].metadata["permission"] == "patients.delete"
    assert Patient.objects.filter(pk=patient.pk).exists()


def test_inactive_tenant_cannot_be_selected(api_client, tenant):
    tenant.status = "SUSPENDED"
    tenant.save(update_fields=["status"])

    resp = api_client.get("/api/v1/patients/", **scoped(tenant))
    _assert_envelope(resp, 400, "no_tenant_context")


def test_request_id_header_is_echoed(api_client, tenant):
    resp = api_client.get("/api/v1/patients/", HTTP_X_REQUEST_ID="req-123", **scoped(tenant))
    assert resp.status_code == 200
    assert resp["X-Request-Id"] == "req-123"
