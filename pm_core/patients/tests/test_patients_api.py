import pytest

from pm_core.audit.constants import AuditAction
from pm_core.audit.models import AuditSeverity
from pm_core.patients.models import Patient
from pm_core.patients.retention import PATIENT
from pm_core.retention.models import LegalHold, RecordState, RetentionRecord
from pm_core.tests.helpers import entries, scoped

pytestmark = pytest.mark.django_db


@pytest.fixture
def alice(tenant):
    return Patient.objects.create(tenant_id=tenant.id, full_name="Alice Example", mrn="A-100",
                                  phone="555-0100")


@pytest.fixture
def bob(other_tenant):
    return Patient.objects.create(tenant_id=other_tenant.id, full_name="Bob Example", mrn="B-200")


def test_create_tracks_record_and_audits_field_names_only(api_client, tenant):
    resp = api_client.post(
        "/api/v1/patients/",
        {"full_name": "Carol Private", "mrn": "C-1", "phone": "555-0199"},
        format="json",
    )

    assert resp.status_code == 201, resp.data
    patient = Patient.objects.get(pk=resp.data["id"])
    assert patient.tenant_id == tenant.id

    record = RetentionRecord.objects.get(record_class=PATIENT, record_key=str(patient.id))
    assert record.tenant_id == tenant.id
    assert record.patient_id == patient.id
    assert record.state == RecordState.ACTIVE

    created = entries(AuditAction.PATIENT_CREATED)
    assert len(created) == 1
    entry = created[0]
    assert entry.involves_protected_data
    assert entry.protected_data_categories == ["contact", "identity"]
    assert "phone" in entry.metadata["fields"]
    assert "Carol Private" not in str(entry.metadata)
    assert "555-0199" not in str(entry.metadata)


def test_forged_tenant_on_create_is_overwritten_and_recorded(api_client, tenant, other_tenant):
    resp = api_client.post(
        "/api/v1/patients/",
        {"full_name": "Dan", "mrn": "D-1", "tenant_id": str(other_tenant.id)},
        format="json",
    )

    assert resp.status_code == 201
    assert resp.data["tenant_id"] == str(tenant.id)
    assert not Patient.objects.filter(tenant_id=other_tenant.id).exists()

    overrides = entries(AuditAction.SCOPE_TENANT_OVERRIDE)
    assert len(overrides) == 1
    assert overrides[0].severity == AuditSeverity.CRITICAL


def test_duplicate_mrn_is_rejected_within_a_tenant_only(api_client, client_for, other_clinic_admin, alice):
    dup = api_client.post("/api/v1/patients/", {"full_name": "Other", "mrn": "A-100"}, format="json")

    assert dup.status_code == 400
    assert dup.data["error"]["code"] == "validation_error"
    assert "mrn" in dup.data["error"]["details"]

    elsewhere = client_for(other_clinic_admin).post(
        "/api/v1/patients/", {"full_name": "Other", "mrn": "A-100"}, format="json"
    )
    assert elsewhere.status_code == 201


def test_list_returns_own_tenant_and_audits_once(api_client, alice, bob):
    resp = api_client.get("/api/v1/patients/")

    assert resp.status_code == 200
    assert [p["id"] for p in resp.data["results"]] == [str(alice.id)]

    listed = entries(AuditAction.PATIENT_LISTED)
    assert len(listed) == 1
    assert listed[0].involves_protected_data
    assert listed[0].metadata["returned"] == 1


def test_search(api_client, alice, tenant):
    Patient.objects.create(tenant_id=tenant.id, full_name="Zed Other", mrn="Z-9")

    resp = api_client.get("/api/v1/patients/", {"q": "alice"})

    assert [p["mrn"] for p in resp.data["results"]] == ["A-100"]
    assert entries(AuditAction.PATIENT_LISTED)[0].metadata["q_present"] is True


def test_retrieve_records_protected_data_access(api_client, clinic_admin, alice):
    resp = api_client.get(f"/api/v1/patients/{alice.id}/")

    assert resp.status_code == 200
    assert resp.data["full_name"] == "Alice Example"

    viewed = entries(AuditAction.PATIENT_VIEWED)
    assert len(viewed) == 1
    assert viewed[0].target_id == str(alice.id)
    assert viewed[0].actor_user_id == clinic_admin.id
    assert viewed[0].involves_protected_data


def test_cross_tenant_read_is_404_with_one_critical_entry(api_client, clinic_admin, tenant, other_tenant, bob):
    resp = api_client.get(f"/api/v1/patients/{bob.id}/")

    assert resp.status_code == 404
    assert "Bob" not in str(resp.data)
    assert entries(AuditAction.PATIENT_VIEWED) == []

    critical = entries(severity=AuditSeverity.CRITICAL)
    assert len(critical) == 1
    entry = critical[0]
    assert entry.action == AuditAction.SCOPE_VIOLATION
    assert entry.actor_user_id == clinic_admin.id
    assert entry.target_id == str(bob.id)
    assert entry.metadata["active_tenant_id"] == str(tenant.id)
    assert entry.metadata["target_tenant_id"] == str(other_tenant.id)


def test_cross_tenant_update_and_delete_change_nothing(api_client, bob):
    patched = api_client.patch(f"/api/v1/patients/{bob.id}/", {"full_name": "Hijacked"}, format="json")
    deleted = api_client.delete(f"/api/v1/patients/{bob.id}/")

    assert patched.status_code == 404
    assert deleted.status_code == 404
    bob.refresh_from_db()
    assert bob.full_name == "Bob Example"
    assert len(entries(AuditAction.SCOPE_VIOLATION)) == 2


def test_update_touches_retention_record(api_client, alice, tenant):
    record = RetentionRecord.objects.create(tenant_id=tenant.id, record_class=PATIENT, record_key=str(alice.id),
                                            patient_id=alice.id, created_at_basis=alice.created_at)

    resp = api_client.patch(f"/api/v1/patients/{alice.id}/", {"phone": "555-0111"}, format="json")

    assert resp.status_code == 200, resp.data
    assert resp.data["phone"] == "555-0111"
    record.refresh_from_db()
    assert record.last_activity_at is not None

    updated = entries(AuditAction.PATIENT_UPDATED)
    assert len(updated) == 1
    assert updated[0].metadata["updated_fields"] == ["phone"]
    assert updated[0].protected_data_categories == ["contact"]


def test_empty_update_is_rejected(api_client, alice):
    resp = api_client.patch(f"/api/v1/patients/{alice.id}/", {}, format="json")

    assert resp.status_code == 400


def test_delete_marks_record_destroyed(api_client, alice, tenant):
    RetentionRecord.objects.create(tenant_id=tenant.id, record_class=PATIENT, record_key=str(alice.id),
                                   patient_id=alice.id, created_at_basis=alice.created_at)

    resp = api_client.delete(f"/api/v1/patients/{alice.id}/")

    assert resp.status_code == 204
    assert not Patient.objects.filter(pk=alice.pk).exists()
    assert RetentionRecord.objects.get(record_key=str(alice.id)).state == RecordState.DESTROYED
    assert len(entries(AuditAction.PATIENT_DELETED)) == 1


def test_held_patient_cannot_be_deleted(api_client, alice, tenant):
    RetentionRecord.objects.create(tenant_id=tenant.id, record_class=PATIENT, record_key=str(alice.id),
                                   patient_id=alice.id, created_at_basis=alice.created_at)
    LegalHold.objects.create(tenant_id=tenant.id, patient_id=alice.id, reason="malpractice claim")

    resp = api_client.delete(f"/api/v1/patients/{alice.id}/")

    assert resp.status_code == 409
    assert resp.data["error"]["code"] == "conflict"
    assert Patient.objects.filter(pk=alice.pk).exists()
    assert entries(AuditAction.PATIENT_DELETED) == []


def test_multi_tenant_clinician_works_in_the_selected_tenant(client_for, clinician, alice, bob, other_tenant):
    client = client_for(clinician)

    resp = client.get("/api/v1/patients/", **scoped(other_tenant))

    assert resp.status_code == 200
    assert [p["id"] for p in resp.data["results"]] == [str(bob.id)]
    assert entries(AuditAction.PATIENT_LISTED)[0].tenant_id == other_tenant.id


def test_hold_committed_while_delete_waits_for_lock_is_honoured(api_client, alice, tenant, monkeypatch):
    from pm_core.patients import services as patient_services
    from pm_core.retention.models import RetentionLock

    real_lock = patient_services.lock_tenant

    def lock_after_hold_lands(tenant_id):
        # the hold's transaction commits just before the lock is granted to the delete
        LegalHold.objects.create(tenant_id=tenant.id, patient_id=alice.id, reason="records request")
        return real_lock(tenant_id)

    monkeypatch.setattr(patient_services, "lock_tenant", lock_after_hold_lands)

    resp = api_client.delete(f"/api/v1/patients/{alice.id}/")

    assert resp.status_code == 409
    assert Patient.objects.filter(pk=alice.pk).exists()
    assert RetentionLock.objects.filter(tenant_id=tenant.id).exists()


def test_hold_naming_an_untracked_patient_blocks_delete(api_client, alice, tenant):
    assert not RetentionRecord.objects.filter(record_key=str(alice.id)).exists()
    LegalHold.objects.create(tenant_id=tenant.id, patient_id=alice.id, reason="subpoena")

    resp = api_client.delete(f"/api/v1/patients/{alice.id}/")

    assert resp.status_code == 409
    assert Patient.objects.filter(pk=alice.pk).exists()
