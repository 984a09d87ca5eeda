# pm_core/iam/admin.py
from __future__ import annotations

from django.contrib import admin

from pm_core.iam.models import Role, RoleAssignment


class RoleAssignmentInline(admin.TabularInline):
    model = RoleAssignment
    extra = 0
    fields = ("user_id", "tenant_id", "expires_at", "granted_by_user_id")
    readonly_fields = ("granted_by_user_id",)


@admin.register(Role)
class RoleAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "scope_kind", "is_system", "is_active")
    list_filter = ("scope_kind", "is_system", "is_active")
    search_fields = ("code", "name")
    inlines = [RoleAssignmentInline]
    ordering = ("code",)

    def get_readonly_fields(self, request, obj=None):
        if obj is not None and obj.is_system:
            return ("code", "scope_kind", "permissions", "is_system")
        return ("is_system",)

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.is_system:
            return False
        return super().has_delete_permission(request, obj)


@admin.register(RoleAssignment)
class RoleAssignmentAdmin(admin.ModelAdmin):
    list_display = ("user_id", "role", "tenant_id", "expires_at", "created_at")
    list_filter = ("role", "tenant_id")
    search_fields = ("user_id", "role__code")
    ordering = ("-created_at",)
