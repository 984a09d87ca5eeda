import pytest
from django.contrib.auth import get_user_model

from pm_core.audit.constants import AuditAction
from pm_core.audit.models import AuditSeverity
from pm_core.common.api.exceptions import NoTenantContext, ScopeConfigurationError, ScopeViolation
from pm_core.common.scope import (
    Operation,
    OperationKind,
    get_scoped,
    scope,
    with_tenant_assignment,
    with_tenant_guard,
    with_tenant_scope,
)
from pm_core.iam.context import ALL_TENANTS
from pm_core.patients.models import Patient
from pm_core.tests.helpers import entries

pytestmark = pytest.mark.django_db


@pytest.fixture
def patients(tenant, other_tenant):
    a = Patient.objects.create(tenant_id=tenant.id, full_name="Alice A", mrn="A-1")
    b = Patient.objects.create(tenant_id=other_tenant.id, full_name="Bob B", mrn="B-1")
    return a, b


def test_read_returns_only_active_tenant_rows(ctx_for, clinician, tenant, patients):
    a, _ = patients
    ctx = ctx_for(clinician, tenant)

    rows = list(with_tenant_scope(ctx, Patient.objects.all()))

    assert [p.id for p in rows] == [a.id]


def test_read_without_active_tenant_spans_authorized_set_only(ctx_for, clinician, patients):
    outsider_tenant_patient = Patient.objects.create(
        tenant_id="11111111-1111-1111-1111-111111111111", full_name="Zed", mrn="Z-1"
    )
    ctx = ctx_for(clinician)
    assert ctx.active_tenant_id is None

    ids = set(with_tenant_scope(ctx, Patient.objects.all()).values_list("id", flat=True))

    assert ids == {patients[0].id, patients[1].id}
    assert outsider_tenant_patient.id not in ids


def test_create_assigns_active_tenant_and_records_forged_tenant(ctx_for, clinic_admin, tenant, other_tenant):
    ctx = ctx_for(clinic_admin, tenant)

    data = with_tenant_assignment(ctx, Patient, {"full_name": "X", "tenant_id": str(other_tenant.id)})

    assert data["tenant_id"] == tenant.id
    overrides = entries(AuditAction.SCOPE_TENANT_OVERRIDE)
    assert len(overrides) == 1
    assert overrides[0].severity == AuditSeverity.CRITICAL
    assert overrides[0].metadata["target_tenant_id"] == str(other_tenant.id)


def test_create_with_matching_tenant_is_not_recorded(ctx_for, clinic_admin, tenant):
    ctx = ctx_for(clinic_admin, tenant)

    data = with_tenant_assignment(ctx, Patient, {"full_name": "X", "tenant_id": str(tenant.id)})

    assert data["tenant_id"] == tenant.id
    assert entries(AuditAction.SCOPE_TENANT_OVERRIDE) == []


def test_create_requires_active_tenant(ctx_for, clinician):
    with pytest.raises(NoTenantContext):
        with_tenant_assignment(ctx_for(clinician), Patient, {"full_name": "X"})


def test_guard_cannot_touch_other_tenant_rows(ctx_for, clinic_admin, tenant, patients):
    _, b = patients
    ctx = ctx_for(clinic_admin, tenant)

    updated = with_tenant_guard(ctx, Patient.objects.filter(pk=b.pk)).update(full_name="hijacked")

    assert updated == 0
    b.refresh_from_db()
    assert b.full_name == "Bob B"


def test_get_scoped_foreign_row_is_a_recorded_violation(ctx_for, clinic_admin, tenant, other_tenant, patients):
    _, b = patients
    ctx = ctx_for(clinic_admin, tenant)

    with pytest.raises(ScopeViolation):
        get_scoped(ctx, Patient, b.pk)

    critical = entries(AuditAction.SCOPE_VIOLATION)
    assert len(critical) == 1
    entry = critical[0]
    assert entry.severity == AuditSeverity.CRITICAL
    assert entry.actor_user_id == clinic_admin.id
    assert entry.tenant_id == tenant.id
    assert entry.metadata["active_tenant_id"] == str(tenant.id)
    assert entry.metadata["target_tenant_id"] == str(other_tenant.id)


def test_get_scoped_missing_or_malformed_key_is_plain_not_found(ctx_for, clinic_admin, tenant):
    from rest_framework.exceptions import NotFound

    ctx = ctx_for(clinic_admin, tenant)

    with pytest.raises(NotFound):
        get_scoped(ctx, Patient, "00000000-0000-0000-0000-00000000dead")
    with pytest.raises(NotFound):
        get_scoped(ctx, Patient, "not-a-uuid")
    assert entries(AuditAction.SCOPE_VIOLATION) == []


def test_cross_tenant_read_requires_global_scope(ctx_for, clinician, tenant, patients):
    ctx = ctx_for(clinician, tenant)

    with pytest.raises(ScopeViolation):
        with_tenant_scope(ctx, Patient.objects.all(), cross_tenant=True)

    assert len(entries(AuditAction.SCOPE_VIOLATION)) == 1


def test_global_cross_tenant_read_is_audited(ctx_for, super_admin, patients):
    ctx = ctx_for(super_admin)
    assert ctx.authorized_tenant_ids is ALL_TENANTS

    rows = with_tenant_scope(ctx, Patient.objects.all(), cross_tenant=True)

    assert rows.count() == 2
    recorded = entries(AuditAction.SCOPE_CROSS_TENANT)
    assert len(recorded) == 1
    assert recorded[0].severity == AuditSeverity.WARNING


def test_global_without_active_tenant_must_choose_explicit_path(ctx_for, super_admin, patients):
    with pytest.raises(NoTenantContext):
        with_tenant_scope(ctx_for(super_admin), Patient.objects.all())


def test_sentinel_is_never_iterated():
    with pytest.raises(TypeError):
        list(ALL_TENANTS)
    with pytest.raises(TypeError):
        _ = "x" in ALL_TENANTS


def test_unregistered_model_fails_closed(ctx_for, clinic_admin, tenant):
    ctx = ctx_for(clinic_admin, tenant)

    with pytest.raises(ScopeConfigurationError):
        with_tenant_scope(ctx, get_user_model().objects.all())


def test_operation_dispatch(ctx_for, clinic_admin, tenant, patients):
    a, b = patients
    ctx = ctx_for(clinic_admin, tenant)

    read = scope(ctx, Operation(kind=OperationKind.READ, model=Patient))
    assert list(read.values_list("id", flat=True)) == [a.id]

    created = scope(ctx, Operation(kind=OperationKind.CREATE, model=Patient, payload={"full_name": "N"}))
    assert created["tenant_id"] == tenant.id

    mutate = scope(ctx, Operation(kind=OperationKind.MUTATE, model=Patient, queryset=Patient.objects.filter(pk=b.pk)))
    assert mutate.count() == 0


def test_caller_without_any_tenant_is_refused_not_given_empty_rows(ctx_for, make_user, patients):
    nobody = make_user("unassigned")
    ctx = ctx_for(nobody)
    assert ctx.authorized_tenant_ids == frozenset()

    with pytest.raises(ScopeViolation):
        list(with_tenant_scope(ctx, Patient.objects.all()))

    recorded = entries(AuditAction.SCOPE_VIOLATION)
    assert len(recorded) == 1
    assert recorded[0].severity == AuditSeverity.CRITICAL
    assert recorded[0].outcome_reason == "no_authorized_tenant"
    assert recorded[0].actor_user_id == nobody.id


def test_caller_whose_assignments_expired_is_refused(ctx_for, make_user, grant, tenant, patients):
    from datetime import timedelta

    from django.utils import timezone

    lapsed = make_user("lapsed")
    grant(lapsed, "clinician", tenant, expires_at=timezone.now() - timedelta(minutes=1))

    with pytest.raises(ScopeViolation):
        with_tenant_scope(ctx_for(lapsed), Patient.objects.all())
