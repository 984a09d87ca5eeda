# pm_core/audit/admin.py
from django.contrib import admin

from pm_core.audit.models import AuditEntry


@admin.register(AuditEntry)
class AuditEntryAdmin(admin.ModelAdmin):
    list_display = (
        "occurred_at",
        "action",
        "severity",
        "category",
        "actor_user_id",
        "tenant_id",
        "target_type",
        "target_id",
        "outcome",
    )
    list_filter = ("severity", "category", "outcome", "involves_protected_data", "is_permanent")
    search_fields = ("action", "target_type", "target_id", "event_id", "request_id")
    ordering = ("-occurred_at",)

    # Append-only: the admin is a viewer.
    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
