import pytest
from django.utils import timezone

from pm_core.audit.models import AuditCategory, AuditEntry, ImmutableRecordError
from pm_core.audit.recorder import EventSpec, audit
from pm_core.retention.models import RetentionAction, RetentionActionStatus, RetentionActionType

pytestmark = pytest.mark.django_db


@pytest.fixture
def entry(system_ctx, tenant):
    audit(system_ctx, EventSpec(action="thing.happened", category=AuditCategory.SYSTEM, tenant_id=tenant.id,
                                metadata={"k": "v"}))
    return AuditEntry.objects.get(action="thing.happened")


def test_existing_entry_cannot_be_saved(entry):
    entry.action = "thing.rewritten"

    with pytest.raises(ImmutableRecordError):
        entry.save()

    assert AuditEntry.objects.get(pk=entry.pk).action == "thing.happened"


def test_entry_cannot_be_deleted(entry):
    with pytest.raises(ImmutableRecordError):
        entry.delete()
    with pytest.raises(ImmutableRecordError):
        AuditEntry.objects.filter(pk=entry.pk).delete()

    assert AuditEntry.objects.filter(pk=entry.pk).exists()


def test_bulk_mutations_are_refused(entry):
    with pytest.raises(ImmutableRecordError):
        AuditEntry.objects.filter(pk=entry.pk).update(severity="CRITICAL")
    with pytest.raises(ImmutableRecordError):
        AuditEntry.objects.bulk_update([entry], ["severity"])
    with pytest.raises(ImmutableRecordError):
        AuditEntry.objects.update_or_create(event_id=entry.event_id, defaults={"action": "x"})

    fresh = AuditEntry.objects.get(pk=entry.pk)
    assert fresh.severity == entry.severity
    assert fresh.metadata == entry.metadata
    assert fresh.metadata["k"] == "v"


def test_purge_requires_an_approved_cleared_destruction(entry, tenant):
    with pytest.raises(ImmutableRecordError):
        AuditEntry.objects.all()._purge_for_retention(action=None)

    action = RetentionAction.objects.create(
        tenant_id=tenant.id,
        action_type=RetentionActionType.DESTRUCTION,
        status=RetentionActionStatus.PENDING_APPROVAL,
        record_class="AuditLog",
    )
    with pytest.raises(ImmutableRecordError):
        AuditEntry.objects.all()._purge_for_retention(action=action)

    action.status = RetentionActionStatus.APPROVED
    action.approved_at = timezone.now()
    with pytest.raises(ImmutableRecordError):
        # hold check not yet passed
        AuditEntry.objects.all()._purge_for_retention(action=action)

    archive = RetentionAction(
        tenant_id=tenant.id,
        action_type=RetentionActionType.ARCHIVE,
        status=RetentionActionStatus.APPROVED,
        approved_at=timezone.now(),
        legal_hold_cleared=True,
    )
    with pytest.raises(ImmutableRecordError):
        AuditEntry.objects.all()._purge_for_retention(action=archive)

    assert AuditEntry.objects.filter(pk=entry.pk).exists()


def test_purge_skips_permanent_entries(system_ctx, tenant):
    audit(system_ctx, EventSpec(action="cert", category=AuditCategory.RETENTION, tenant_id=tenant.id,
                                is_permanent=True))
    audit(system_ctx, EventSpec(action="plain", category=AuditCategory.SYSTEM, tenant_id=tenant.id))
    action = RetentionAction(
        tenant_id=tenant.id,
        action_type=RetentionActionType.DESTRUCTION,
        status=RetentionActionStatus.APPROVED,
        approved_at=timezone.now(),
        legal_hold_cleared=True,
    )

    deleted = AuditEntry.objects.filter(tenant_id=tenant.id)._purge_for_retention(action=action)

    assert deleted == 1
    assert list(AuditEntry.objects.values_list("action", flat=True)) == ["cert"]
