from django.apps import AppConfig


class RetentionConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "pm_core.retention"

    def ready(self) -> None:
        from pm_core.common.scope import register_global, register_tenant_scoped
        from pm_core.retention import handlers  # noqa: F401  (registers the AuditLog handler)
        from pm_core.retention.models import LegalHold, RetentionAction, RetentionLock, RetentionPolicy, RetentionRecord

        register_global(RetentionPolicy)
        register_tenant_scoped(RetentionRecord)
        register_tenant_scoped(RetentionAction)
        register_tenant_scoped(LegalHold)
        register_tenant_scoped(RetentionLock)
