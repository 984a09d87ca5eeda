import pytest
from rest_framework.test import APIClient

from pm_core.audit.constants import AuditAction
from pm_core.audit.models import ActorType, AuditCategory, AuditOutcome, AuditSeverity
from pm_core.iam.permissions import PermissionCode
from pm_core.tests.helpers import entries, scoped

pytestmark = pytest.mark.django_db


def test_login_sets_cookies_and_records_event(make_user, settings):
    user = make_user("alice")

    res = APIClient().post("/api/v1/auth/login/", {"username": "alice", "password": "testpass"}, format="json")

    assert res.status_code == 200
    assert settings.SIMPLE_JWT["AUTH_COOKIE"] in res.cookies
    assert settings.SIMPLE_JWT["AUTH_COOKIE_REFRESH"] in res.cookies

    recorded = entries(AuditAction.AUTH_LOGIN)
    assert len(recorded) == 1
    assert recorded[0].category == AuditCategory.AUTHENTICATION
    assert recorded[0].actor_user_id == user.id
    assert recorded[0].actor_type == ActorType.USER
    assert recorded[0].tenant_id is None


def test_failed_login_is_a_warning(make_user):
    make_user("alice")

    res = APIClient().post("/api/v1/auth/login/", {"username": "alice", "password": "nope"}, format="json")

    assert res.status_code == 401
    assert res.data["error"]["code"] == "not_authenticated"

    recorded = entries(AuditAction.AUTH_LOGIN_FAILED)
    assert len(recorded) == 1
    entry = recorded[0]
    assert entry.severity == AuditSeverity.WARNING
    assert entry.outcome == AuditOutcome.FAILURE
    assert entry.actor_type == ActorType.ANONYMOUS
    assert entry.metadata["username"] == "alice"
    assert "nope" not in str(entry.metadata)


def test_logout_clears_cookies_and_records_event(client_for, clinic_admin, settings):
    res = client_for(clinic_admin).post("/api/v1/auth/logout/")

    assert res.status_code == 200
    assert res.cookies[settings.SIMPLE_JWT["AUTH_COOKIE"]].value == ""
    recorded = entries(AuditAction.AUTH_LOGOUT)
    assert len(recorded) == 1
    assert recorded[0].actor_user_id == clinic_admin.id


def test_session_context_for_single_tenant_user(api_client, clinic_admin, tenant):
    res = api_client.get("/api/v1/session/context/")

    assert res.status_code == 200
    body = res.data
    assert body["user"]["id"] == clinic_admin.id
    assert body["is_global"] is False
    assert body["active_tenant"]["id"] == str(tenant.id)
    assert [t["code"] for t in body["tenants"]] == ["clinic-a"]
    assert body["role_codes"] == ["clinic_admin"]
    assert PermissionCode.PATIENTS_VIEW in body["permissions"]
    assert body["assignments"][0]["role_code"] == "clinic_admin"


def test_session_context_for_multi_tenant_user_lists_choices(client_for, clinician, tenant):
    client = client_for(clinician)

    bare = client.get("/api/v1/session/context/")
    assert bare.status_code == 200
    assert bare.data["active_tenant"] is None
    assert bare.data["permissions"] == []
    assert [t["code"] for t in bare.data["tenants"]] == ["clinic-a", "clinic-b"]

    chosen = client.get("/api/v1/session/context/", **scoped(tenant))
    assert chosen.data["active_tenant"]["code"] == "clinic-a"
    assert PermissionCode.PATIENTS_UPDATE in chosen.data["permissions"]


def test_session_context_for_foreign_tenant_is_404(api_client, other_tenant):
    res = api_client.get("/api/v1/session/context/", **scoped(other_tenant))

    assert res.status_code == 404
    assert len(entries(AuditAction.SCOPE_VIOLATION)) == 1


def test_session_context_for_global_user(client_for, super_admin):
    res = client_for(super_admin).get("/api/v1/session/context/")

    assert res.status_code == 200
    assert res.data["is_global"] is True
    assert res.data["tenants"] == []
