# pm_core/patients/retention.py
"""Retention handler for record class "Patient" (one RetentionRecord per patient)."""
from __future__ import annotations

from django.utils import timezone

from pm_core.retention.handlers import RecordClassHandler, register_handler
from pm_core.retention.models import DestructionMethod, RetentionPolicy

PATIENT = "Patient"


def _archive_patient(record) -> None:
    from pm_core.patients.models import Patient

    Patient.objects.filter(pk=record.record_key, tenant_id=record.tenant_id, archived_at__isnull=True).update(
        archived_at=timezone.now()
    )


def _destroy_patient(record, action) -> int:
    from pm_core.patients.models import Patient

    qs = Patient.objects.filter(pk=record.record_key, tenant_id=record.tenant_id)
    policy = RetentionPolicy.objects.filter(record_class=PATIENT).first()

    if policy is not None and policy.destruction_method == DestructionMethod.ANONYMIZE:
        patient = qs.first()
        if patient is None:
            return 0
        patient.full_name = "Anonymized"
        patient.phone = ""
        patient.email = ""
        patient.date_of_birth = None
        patient.mrn = f"ANON-{patient.id.hex[:12]}"
        patient.save(update_fields=["full_name", "phone", "email", "date_of_birth", "mrn", "updated_at"])
        return 1

    deleted, _ = qs.delete()
    return deleted


def _patient_birth_dates(records) -> dict:
    from pm_core.patients.models import Patient

    rows = Patient.objects.filter(pk__in=[r.record_key for r in records], date_of_birth__isnull=False)
    return {str(pk): born for pk, born in rows.values_list("id", "date_of_birth")}


def register_patient_handler() -> None:
    register_handler(
        RecordClassHandler(
            record_class=PATIENT,
            archive=_archive_patient,
            destroy=_destroy_patient,
            birth_dates=_patient_birth_dates,
        )
    )
