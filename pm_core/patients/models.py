# pm_core/patients/models.py
from django.db import models

from pm_core.common.models import TenantScopedModel


class Patient(TenantScopedModel):
    """
    Reference consumer of the core: a tenant-scoped record holding protected
    personal data, tracked by retention as record class "Patient".
    """
    full_name = models.CharField(max_length=255)
    phone = models.CharField(max_length=32, blank=True)
    email = models.EmailField(blank=True)
    date_of_birth = models.DateField(null=True, blank=True)

    # tenant-local medical record number
    mrn = models.CharField(max_length=64)

    archived_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "patients_patient"
        constraints = [
            models.UniqueConstraint(
                fields=["tenant_id", "mrn"],
                name="uq_patient_tenant_mrn",
            ),
        ]
        indexes = [
            models.Index(fields=["tenant_id", "full_name"]),
            models.Index(fields=["tenant_id", "phone"]),
        ]

    def __str__(self) -> str:
        return f"{self.full_name} ({self.mrn})"
