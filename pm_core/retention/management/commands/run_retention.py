# pm_core/retention/management/commands/run_retention.py

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from pm_core.retention.engine import RetentionEngine


class Command(BaseCommand):
    help = "Evaluate retention policies and legal holds; execute approved destructions that are due."

    def add_arguments(self, parser):
        parser.add_argument("--now", default=None, help="Evaluate as of this ISO-8601 instant (defaults to now).")

    def handle(self, *args, **options):
        now = None
        if options["now"]:
            now = parse_datetime(options["now"])
            if now is None:
                raise CommandError(f"Invalid --now value: {options['now']!r}")
            if timezone.is_naive(now):
                now = timezone.make_aware(now)

        report = RetentionEngine().run(now=now)

        self.stdout.write(
            self.style.SUCCESS(
                "Retention run complete. "
                f"holds expired: {report.holds_expired}, assignments expired: {report.assignments_expired}, "
                f"enrolled: {report.enrolled}, archived: {report.archived}, proposed: {report.proposed}, "
                f"executed: {report.executed}, deferred: {report.deferred}, on hold: {report.skipped_on_hold}, "
                f"kept for minors: {report.retained_for_minors}, archive notices: {report.archive_notices}"
            )
        )
        for error in report.errors:
            self.stderr.write(self.style.ERROR(error))
