# pm_core/patients/admin.py
from django.contrib import admin

from pm_core.patients.models import Patient


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = (
        "full_name",
        "mrn",
        "phone",
        "email",
        "tenant_id",
        "archived_at",
        "created_at",
    )
    list_filter = ("tenant_id",)
    search_fields = ("full_name", "mrn", "phone", "email")
    readonly_fields = ("created_at", "updated_at", "archived_at")
    ordering = ("-created_at",)
