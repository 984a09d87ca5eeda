# pm_core/iam/management/commands/ensure_roles.py

from django.core.management.base import BaseCommand

from pm_core.iam.services import RoleService


class Command(BaseCommand):
    help = "Ensure the system roles exist with their shipped structure (idempotent)."

    def handle(self, *args, **options):
        result = RoleService.ensure_system_roles()
        self.stdout.write(
            self.style.SUCCESS(
                f"System roles ensured. Newly created: {result['created']}, restored: {result['updated']}"
            )
        )
