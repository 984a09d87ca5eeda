# pm_core/conftest.py
import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from pm_core.audit.recorder import reset_recorder
from pm_core.iam.context import AccessContext, build_context
from pm_core.iam.models import Role, RoleAssignment
from pm_core.tenants.models import Tenant


@pytest.fixture(autouse=True)
def _fresh_audit_recorder():
    """Each test gets a recorder built from the current settings."""
    reset_recorder()
    yield
    reset_recorder()


@pytest.fixture
def tenant(db):
    return Tenant.objects.create(code="clinic-a", name="Clinic A")


@pytest.fixture
def other_tenant(db):
    return Tenant.objects.create(code="clinic-b", name="Clinic B")


@pytest.fixture
def system_roles(db):
    from pm_core.iam.services import RoleService

    RoleService.ensure_system_roles()
    return {r.code: r for r in Role.objects.filter(is_system=True)}


@pytest.fixture
def make_user(db):
    User = get_user_model()
    counter = {"n": 0}

    def _make(username=None):
        counter["n"] += 1
        return User.objects.create_user(
            username=username or f"user{counter['n']}",
            password="testpass",
            is_active=True,
        )

    return _make


@pytest.fixture
def grant(system_roles):
    """Direct assignment, bypassing the service (fixture setup only)."""

    def _grant(user, role_code, tenant=None, **extra):
        return RoleAssignment.objects.create(
            user_id=user.id,
            role=system_roles[role_code],
            tenant_id=tenant.id if tenant is not None else None,
            **extra,
        )

    return _grant


@pytest.fixture
def clinic_admin(make_user, grant, tenant):
    user = make_user("clinic_admin_a")
    grant(user, "clinic_admin", tenant)
    return user


@pytest.fixture
def other_clinic_admin(make_user, grant, other_tenant):
    user = make_user("clinic_admin_b")
    grant(user, "clinic_admin", other_tenant)
    return user


@pytest.fixture
def clinician(make_user, grant, tenant, other_tenant):
    """MULTI_TENANT role in both clinics."""
    user = make_user("clinician")
    grant(user, "clinician", tenant)
    grant(user, "clinician", other_tenant)
    return user


@pytest.fixture
def compliance_officer(make_user, grant, tenant):
    user = make_user("compliance")
    grant(user, "compliance_officer", tenant)
    return user


@pytest.fixture
def super_admin(make_user, grant):
    user = make_user("root")
    grant(user, "super_admin")
    return user


@pytest.fixture
def client_for():
    def _client(user):
        c = APIClient()
        c.force_authenticate(user=user)
        return c

    return _client


@pytest.fixture
def api_client(client_for, clinic_admin):
    return client_for(clinic_admin)


@pytest.fixture
def ctx_for(db):
    def _ctx(user, tenant=None, **kwargs):
        return build_context(user=user, requested_tenant_id=tenant.id if tenant is not None else None, **kwargs)

    return _ctx


@pytest.fixture
def system_ctx():
    return AccessContext.system()
