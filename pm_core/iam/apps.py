from django.apps import AppConfig


class IamConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "pm_core.iam"

    def ready(self) -> None:
        # import here so app loading doesn't break tooling
        from pm_core.common.scope import register_global, register_tenant_scoped
        from pm_core.iam import openapi  # noqa: F401
        from pm_core.iam.models import Role, RoleAssignment

        register_global(Role)
        register_tenant_scoped(RoleAssignment)
