# pm_core/patients/services.py
from __future__ import annotations

from django.db import IntegrityError, transaction
from rest_framework.exceptions import ValidationError

from pm_core.audit.constants import AuditAction, ProtectedDataCategory
from pm_core.audit.models import AuditCategory
from pm_core.audit.recorder import EventSpec, audit
from pm_core.common.api.exceptions import ConflictError
from pm_core.common.scope import with_tenant_assignment, with_tenant_guard
from pm_core.patients.models import Patient
from pm_core.patients.retention import PATIENT
from pm_core.retention.models import RetentionRecord
from pm_core.retention.services import LegalHoldService, RetentionService, lock_tenant

EDITABLE_FIELDS = ("full_name", "mrn", "phone", "email", "date_of_birth")

IDENTITY_FIELDS = {"full_name", "mrn", "date_of_birth"}
CONTACT_FIELDS = {"phone", "email"}

MRN_CONFLICT = "MRN already exists for this tenant."


def _categories(fields) -> tuple:
    cats = []
    if IDENTITY_FIELDS & set(fields):
        cats.append(ProtectedDataCategory.IDENTITY)
    if CONTACT_FIELDS & set(fields):
        cats.append(ProtectedDataCategory.CONTACT)
    return tuple(cats)


def _patient_event(context, *, action: str, category: str, patient_id, fields=EDITABLE_FIELDS, metadata=None):
    # Field names only; the values stay out of the trail.
    audit(
        context,
        EventSpec(
            action=action,
            category=category,
            target_type="Patient",
            target_id=patient_id,
            involves_protected_data=True,
            protected_data_categories=_categories(fields),
            metadata=metadata or {},
        ),
    )


class PatientService:
    @staticmethod
    def create_patient(*, context, data: dict) -> Patient:
        payload = with_tenant_assignment(context, Patient, data)
        fields = {k: payload[k] for k in EDITABLE_FIELDS if k in payload}

        try:
            with transaction.atomic():
                patient = Patient.objects.create(
                    tenant_id=payload["tenant_id"],
                    full_name=fields["full_name"],
                    mrn=fields["mrn"],
                    phone=fields.get("phone") or "",
                    email=fields.get("email") or "",
                    date_of_birth=fields.get("date_of_birth"),
                )
                RetentionService.track(
                    record_class=PATIENT,
                    record_key=str(patient.id),
                    tenant_id=patient.tenant_id,
                    patient_id=patient.id,
                    created_at=patient.created_at,
                )
                _patient_event(context, action=AuditAction.PATIENT_CREATED, category=AuditCategory.DATA_CHANGE,
                               patient_id=patient.id, fields=fields.keys(),
                               metadata={"fields": sorted(fields.keys())})
        except IntegrityError:
            raise ValidationError({"mrn": MRN_CONFLICT})
        return patient

    @staticmethod
    def update_patient(*, context, patient: Patient, data: dict) -> Patient:
        updates = {k: v for k, v in (data or {}).items() if k in EDITABLE_FIELDS}

        try:
            with transaction.atomic():
                patient = with_tenant_guard(context, Patient.objects.select_for_update().filter(pk=patient.pk)).get()
                for k, v in updates.items():
                    setattr(patient, k, v)
                patient.save()

                RetentionService.touch(record_class=PATIENT, record_key=str(patient.id), at=patient.updated_at)
                _patient_event(context, action=AuditAction.PATIENT_UPDATED, category=AuditCategory.DATA_CHANGE,
                               patient_id=patient.id, fields=updates.keys(),
                               metadata={"updated_fields": sorted(updates.keys())})
        except IntegrityError:
            raise ValidationError({"mrn": MRN_CONFLICT})
        return patient

    @staticmethod
    def delete_patient(*, context, patient: Patient) -> None:
        """Refused while a legal hold covers the patient's record."""
        with transaction.atomic():
            # Same lock as hold creation: a hold committed before this point is seen below.
            lock_tenant(patient.tenant_id)

            record = RetentionRecord.objects.filter(record_class=PATIENT, record_key=str(patient.id)).first()
            if record is None:
                # untracked patients are still covered by holds naming them
                record = RetentionRecord(tenant_id=patient.tenant_id, record_class=PATIENT,
                                         record_key=str(patient.id), patient_id=patient.id,
                                         created_at_basis=patient.created_at)
            if LegalHoldService.is_frozen(record):
                raise ConflictError("Patient is under an active legal hold and cannot be deleted.")

            deleted, _ = with_tenant_guard(context, Patient.objects.filter(pk=patient.pk)).delete()
            if not deleted:
                raise ConflictError("Patient was already deleted.")
            RetentionService.mark_destroyed(record_class=PATIENT, record_key=str(patient.id))
            _patient_event(context, action=AuditAction.PATIENT_DELETED, category=AuditCategory.DATA_CHANGE,
                           patient_id=patient.id)

    @staticmethod
    def record_view(context, *, patient: Patient) -> None:
        RetentionService.record_access(record_class=PATIENT, record_key=str(patient.id))
        _patient_event(context, action=AuditAction.PATIENT_VIEWED, category=AuditCategory.DATA_ACCESS,
                       patient_id=patient.id)

    @staticmethod
    def record_list(context, *, returned: int, q: str = "") -> None:
        _patient_event(context, action=AuditAction.PATIENT_LISTED, category=AuditCategory.DATA_ACCESS,
                       patient_id=None, metadata={"returned": returned, "q_present": bool(q)})
