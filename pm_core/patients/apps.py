from django.apps import AppConfig


class PatientsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "pm_core.patients"

    def ready(self) -> None:
        from pm_core.common.scope import register_tenant_scoped
        from pm_core.patients.models import Patient
        from pm_core.patients.retention import register_patient_handler

        register_tenant_scoped(Patient)
        register_patient_handler()
