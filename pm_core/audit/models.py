# pm_core/audit/models.py
import uuid

from django.db import models


class ImmutableRecordError(Exception):
    """Raised on any attempt to update or delete an append-only record."""


class AuditSeverity(models.TextChoices):
    INFO = "INFO", "Info"
    WARNING = "WARNING", "Warning"
    CRITICAL = "CRITICAL", "Critical"


class AuditCategory(models.TextChoices):
    AUTHENTICATION = "AUTHENTICATION", "Authentication"
    AUTHORIZATION = "AUTHORIZATION", "Authorization"
    DATA_ACCESS = "DATA_ACCESS", "Data access"
    DATA_CHANGE = "DATA_CHANGE", "Data change"
    ROLE_CHANGE = "ROLE_CHANGE", "Role change"
    SECURITY = "SECURITY", "Security"
    RETENTION = "RETENTION", "Retention"
    SYSTEM = "SYSTEM", "System"


class AuditOutcome(models.TextChoices):
    SUCCESS = "SUCCESS", "Success"
    FAILURE = "FAILURE", "Failure"


class ActorType(models.TextChoices):
    USER = "USER", "User"
    SYSTEM = "SYSTEM", "System"
    ANONYMOUS = "ANONYMOUS", "Anonymous"


class AppendOnlyQuerySet(models.QuerySet):
    """
    Inserts only. Every bulk mutation path raises.

    The single sanctioned removal path is `_purge_for_retention`, which
    requires an approved, hold-cleared destruction action and never touches
    permanent entries.
    """

    def update(self, **kwargs):
        raise ImmutableRecordError("Audit entries are append-only; update() is not allowed.")

    def delete(self):
        raise ImmutableRecordError("Audit entries are append-only; delete() is not allowed.")

    def bulk_update(self, objs, fields, batch_size=None):
        raise ImmutableRecordError("Audit entries are append-only; bulk_update() is not allowed.")

    def update_or_create(self, defaults=None, **kwargs):
        raise ImmutableRecordError("Audit entries are append-only; update_or_create() is not allowed.")

    def _purge_for_retention(self, *, action) -> int:
        from pm_core.retention.models import RetentionActionStatus, RetentionActionType

        if action is None or action.action_type != RetentionActionType.DESTRUCTION:
            raise ImmutableRecordError("Audit purge requires a destruction action.")
        if action.status not in (RetentionActionStatus.APPROVED, RetentionActionStatus.DEFERRED):
            raise ImmutableRecordError("Audit purge requires an approved destruction action.")
        if not action.legal_hold_cleared or action.approved_at is None:
            raise ImmutableRecordError("Audit purge requires legal hold clearance.")

        deleted, _ = models.QuerySet.delete(self.filter(is_permanent=False))
        return deleted


class AuditEntry(models.Model):
    """
    One security-relevant event. Write-once.

    `sequence` is the store order; `occurred_at` is server-assigned and
    monotonic within a process. Corrections are new entries pointing at
    the original through `corrects_event_id`.
    """
    sequence = models.BigAutoField(primary_key=True)
    event_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)

    occurred_at = models.DateTimeField(db_index=True)
    recorded_at = models.DateTimeField(auto_now_add=True)

    actor_type = models.CharField(max_length=16, choices=ActorType.choices, default=ActorType.USER)
    actor_user_id = models.BigIntegerField(null=True, blank=True, db_index=True)

    action = models.CharField(max_length=128, db_index=True)  # e.g. "patient.viewed"
    category = models.CharField(max_length=32, choices=AuditCategory.choices, db_index=True)
    severity = models.CharField(max_length=16, choices=AuditSeverity.choices, default=AuditSeverity.INFO, db_index=True)

    target_type = models.CharField(max_length=128, blank=True, default="", db_index=True)
    target_id = models.CharField(max_length=64, blank=True, default="", db_index=True)

    # NULL only for system-wide or cross-tenant events
    tenant_id = models.UUIDField(null=True, blank=True, db_index=True)

    involves_protected_data = models.BooleanField(default=False, db_index=True)
    protected_data_categories = models.JSONField(default=list, blank=True)

    outcome = models.CharField(max_length=16, choices=AuditOutcome.choices, default=AuditOutcome.SUCCESS)
    outcome_reason = models.CharField(max_length=255, blank=True, default="")

    before = models.JSONField(null=True, blank=True)
    after = models.JSONField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    ip_address = models.GenericIPAddressField(null=True, blank=True)
    request_id = models.CharField(max_length=64, blank=True, default="")

    corrects_event_id = models.UUIDField(null=True, blank=True, db_index=True)
    is_permanent = models.BooleanField(default=False)

    objects = AppendOnlyQuerySet.as_manager()

    class Meta:
        db_table = "audit_entry"
        base_manager_name = "objects"
        ordering = ["-occurred_at", "-sequence"]
        indexes = [
            models.Index(fields=["tenant_id", "occurred_at"]),
            models.Index(fields=["target_type", "target_id"]),
            models.Index(fields=["tenant_id", "severity"]),
        ]

    def __str__(self) -> str:
        return f"{self.action} [{self.severity}] {self.event_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError("Audit entries are append-only; existing entries cannot be saved.")
        kwargs["force_insert"] = True
        kwargs.pop("force_update", None)
        kwargs.pop("update_fields", None)
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Audit entries are append-only; delete() is not allowed.")
