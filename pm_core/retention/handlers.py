# pm_core/retention/handlers.py
"""
Record-class handlers.

The engine only knows record classes through this registry; a policy or
action for an unregistered class is refused instead of guessed at.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone as dt_timezone
from typing import Callable, Optional

from django.core.exceptions import ImproperlyConfigured
from django.db.models.functions import TruncDate
from django.utils import timezone

logger = logging.getLogger(__name__)

AUDIT_LOG = "AuditLog"


class UnknownRecordClass(ImproperlyConfigured):
    pass


@dataclass(frozen=True)
class RecordClassHandler:
    record_class: str
    # archive(record) -> None
    archive: Callable
    # destroy(record, action) -> number of rows removed
    destroy: Callable
    # enroll(now) -> number of new RetentionRecords; None if records are tracked on write
    enroll: Optional[Callable] = None
    # birth_dates(records) -> {record_key: date}; records without an entry are not minors
    birth_dates: Optional[Callable] = None


_HANDLERS: dict[str, RecordClassHandler] = {}


def register_handler(handler: RecordClassHandler) -> None:
    _HANDLERS[handler.record_class] = handler


def get_handler(record_class: str) -> RecordClassHandler:
    try:
        return _HANDLERS[record_class]
    except KeyError:
        raise UnknownRecordClass(f"No retention handler registered for record class {record_class!r}.")


def registered_record_classes() -> list[str]:
    return sorted(_HANDLERS)


# ---------------------------------------------------------------------------
# AuditLog: per-tenant, per-day batches of audit entries
# ---------------------------------------------------------------------------

def _day_start(day) -> datetime:
    return timezone.make_aware(datetime.combine(day, time.min), dt_timezone.utc)


def audit_batch_key(tenant_id, day) -> str:
    return f"{tenant_id}:{day.isoformat()}"


def _enroll_audit_batches(now: datetime) -> int:
    """
    One RetentionRecord per (tenant, UTC day) with audit entries, for
    completed days only. Entries without a tenant (logins, system events)
    are not enrolled and are kept indefinitely.
    """
    from pm_core.audit.models import AuditEntry
    from pm_core.retention.models import RetentionRecord

    today_start = _day_start(now.astimezone(dt_timezone.utc).date())
    rows = (
        AuditEntry.objects.filter(tenant_id__isnull=False, is_permanent=False, occurred_at__lt=today_start)
        .annotate(day=TruncDate("occurred_at", tzinfo=dt_timezone.utc))
        .values_list("tenant_id", "day")
        .order_by()
        .distinct()
    )

    created = 0
    for tenant_id, day in rows:
        _, was_created = RetentionRecord.objects.get_or_create(
            record_class=AUDIT_LOG,
            record_key=audit_batch_key(tenant_id, day),
            defaults={
                "tenant_id": tenant_id,
                "created_at_basis": _day_start(day),
            },
        )
        if was_created:
            created += 1
    return created


def _archive_audit_batch(record) -> None:
    # Entries are already immutable; archival is a lifecycle marker only.
    logger.debug("audit batch %s archived", record.record_key)


def _destroy_audit_batch(record, action) -> int:
    from pm_core.audit.models import AuditEntry

    start = record.created_at_basis
    end = start + timedelta(days=1)
    return AuditEntry.objects.filter(
        tenant_id=record.tenant_id,
        occurred_at__gte=start,
        occurred_at__lt=end,
    )._purge_for_retention(action=action)


register_handler(
    RecordClassHandler(
        record_class=AUDIT_LOG,
        archive=_archive_audit_batch,
        destroy=_destroy_audit_batch,
        enroll=_enroll_audit_batches,
    )
)
