from django.apps import AppConfig


class AuditConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "pm_core.audit"

    def ready(self) -> None:
        from pm_core.audit.models import AuditEntry
        from pm_core.common.scope import register_tenant_scoped

        register_tenant_scoped(AuditEntry)
