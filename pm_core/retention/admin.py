# pm_core/retention/admin.py
from django.contrib import admin

from pm_core.retention.models import LegalHold, RetentionAction, RetentionPolicy, RetentionRecord


@admin.register(RetentionPolicy)
class RetentionPolicyAdmin(admin.ModelAdmin):
    list_display = ("record_class", "retention_days", "archive_after_days", "basis", "destruction_method", "is_active")
    list_filter = ("basis", "destruction_method", "is_active")
    search_fields = ("record_class",)


@admin.register(RetentionRecord)
class RetentionRecordAdmin(admin.ModelAdmin):
    list_display = ("record_class", "record_key", "tenant_id", "state", "created_at_basis", "is_permanent")
    list_filter = ("record_class", "state", "is_permanent")
    search_fields = ("record_key",)

    # Lifecycle moves through the services only.
    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(RetentionAction)
class RetentionActionAdmin(admin.ModelAdmin):
    list_display = ("action_type", "record_class", "tenant_id", "status", "approved_at", "executed_at",
                    "certificate_reference")
    list_filter = ("action_type", "status")
    search_fields = ("certificate_reference", "record_class")

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(LegalHold)
class LegalHoldAdmin(admin.ModelAdmin):
    list_display = ("id", "tenant_id", "status", "patient_id", "expires_at", "version", "created_at")
    list_filter = ("status",)
    search_fields = ("reason",)

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
