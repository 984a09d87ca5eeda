# pm_core/audit/management/commands/replay_audit_spool.py

from django.core.management.base import BaseCommand, CommandError

from pm_core.audit.dispatch import AuditSpool, persist_entry
from pm_core.common.conf import core_setting


class Command(BaseCommand):
    help = "Persist audit entries left unacknowledged in the write-ahead spool (idempotent by event_id)."

    def add_arguments(self, parser):
        parser.add_argument("--path", default=None, help="Spool file (defaults to PM_CORE['AUDIT_SPOOL_PATH']).")

    def handle(self, *args, **options):
        path = options["path"] or core_setting("AUDIT_SPOOL_PATH")
        if not path:
            raise CommandError("No spool path configured; pass --path or set PM_AUDIT_SPOOL_PATH.")

        spool = AuditSpool(path)
        pending = spool.pending()

        replayed = 0
        for entry in pending:
            persist_entry(entry)
            spool.ack(entry.get("event_id"))
            replayed += 1

        remaining = spool.compact()
        self.stdout.write(self.style.SUCCESS(f"Audit spool replayed: {replayed}, remaining: {remaining}"))
