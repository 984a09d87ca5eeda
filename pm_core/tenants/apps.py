from django.apps import AppConfig


class TenantsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "pm_core.tenants"

    def ready(self) -> None:
        from pm_core.common.scope import register_global
        from pm_core.tenants.models import Tenant

        # The tenant row *is* the scope root; visibility is checked through
        # AccessContext.can_act_on, not a tenant_id column.
        register_global(Tenant)
