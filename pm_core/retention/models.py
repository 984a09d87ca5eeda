# pm_core/retention/models.py
import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone

from pm_core.common.models import TenantScopedModel, TimeStampedModel


class RetentionBasis(models.TextChoices):
    CREATED = "CREATED", "Creation date"
    LAST_ACTIVITY = "LAST_ACTIVITY", "Last activity"


class DestructionMethod(models.TextChoices):
    PURGE = "PURGE", "Permanent deletion"
    ANONYMIZE = "ANONYMIZE", "Anonymization"


class RecordState(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    ARCHIVED = "ARCHIVED", "Archived"
    PENDING_DESTRUCTION = "PENDING_DESTRUCTION", "Pending destruction"
    DESTROYED = "DESTROYED", "Destroyed"


class RetentionActionType(models.TextChoices):
    ARCHIVE = "ARCHIVE", "Archive"
    DESTRUCTION = "DESTRUCTION", "Destruction"
    HOLD = "HOLD", "Hold"
    RELEASE = "RELEASE", "Release"


class RetentionActionStatus(models.TextChoices):
    PENDING_APPROVAL = "PENDING_APPROVAL", "Pending approval"
    APPROVED = "APPROVED", "Approved"
    DEFERRED = "DEFERRED", "Deferred"
    EXECUTED = "EXECUTED", "Executed"
    CANCELLED = "CANCELLED", "Cancelled"


OPEN_ACTION_STATUSES = (
    RetentionActionStatus.PENDING_APPROVAL,
    RetentionActionStatus.APPROVED,
    RetentionActionStatus.DEFERRED,
)


class LegalHoldStatus(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    RELEASED = "RELEASED", "Released"
    EXPIRED = "EXPIRED", "Expired"


class RetentionPolicy(TimeStampedModel):
    """
    How long one record class is kept and what happens afterwards.
    A policy only governs; destruction always goes through an approved
    RetentionAction.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    record_class = models.CharField(max_length=64, unique=True)  # e.g. "AuditLog", "Patient"
    retention_days = models.PositiveIntegerField()
    basis = models.CharField(max_length=16, choices=RetentionBasis.choices, default=RetentionBasis.CREATED)
    archive_after_days = models.PositiveIntegerField()
    destruction_method = models.CharField(
        max_length=16, choices=DestructionMethod.choices, default=DestructionMethod.PURGE
    )
    # extra days kept after a patient's 21st birthday; the later end date wins
    minor_extension_days = models.PositiveIntegerField(null=True, blank=True)
    # report records whose archival falls within this many days
    notify_before_archive_days = models.PositiveIntegerField(null=True, blank=True)
    # reads reset last_activity_at (matters under the LAST_ACTIVITY basis)
    auto_extend_on_access = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True, db_index=True)
    description = models.TextField(blank=True, default="")

    class Meta:
        db_table = "retention_policy"
        ordering = ["record_class"]
        constraints = [
            models.CheckConstraint(
                condition=Q(archive_after_days__lte=models.F("retention_days")),
                name="ck_retention_policy_archive_le_retention",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.record_class}: {self.retention_days}d ({self.basis})"


class RetentionRecord(TenantScopedModel):
    """
    Lifecycle row for one tracked record (or one per-tenant, per-day
    batch of audit entries). The LEGAL_HOLD state is computed from the
    active holds, never stored.
    """
    record_class = models.CharField(max_length=64, db_index=True)
    record_key = models.CharField(max_length=128)
    patient_id = models.UUIDField(null=True, blank=True, db_index=True)

    created_at_basis = models.DateTimeField(db_index=True)
    last_activity_at = models.DateTimeField(null=True, blank=True)

    state = models.CharField(max_length=24, choices=RecordState.choices, default=RecordState.ACTIVE, db_index=True)
    state_changed_at = models.DateTimeField(default=timezone.now)
    is_permanent = models.BooleanField(default=False)

    class Meta:
        db_table = "retention_record"
        constraints = [
            models.UniqueConstraint(fields=["record_class", "record_key"], name="uq_retention_record_class_key"),
        ]
        indexes = [
            models.Index(fields=["tenant_id", "record_class", "state"]),
        ]

    def __str__(self) -> str:
        return f"{self.record_class}:{self.record_key} [{self.state}]"

    def basis_at(self, basis: str):
        if basis == RetentionBasis.LAST_ACTIVITY and self.last_activity_at:
            return self.last_activity_at
        return self.created_at_basis


class RetentionAction(TenantScopedModel):
    action_type = models.CharField(max_length=16, choices=RetentionActionType.choices)
    status = models.CharField(
        max_length=24,
        choices=RetentionActionStatus.choices,
        default=RetentionActionStatus.PENDING_APPROVAL,
        db_index=True,
    )
    record_class = models.CharField(max_length=64, db_index=True)
    records = models.ManyToManyField(RetentionRecord, related_name="actions", blank=True)

    approved_by_user_id = models.BigIntegerField(null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    approval_note = models.TextField(blank=True, default="")

    scheduled_for = models.DateTimeField(null=True, blank=True, db_index=True)
    next_evaluation_at = models.DateTimeField(null=True, blank=True, db_index=True)
    legal_hold_cleared = models.BooleanField(default=False)
    deferral_count = models.PositiveIntegerField(default=0)

    executed_at = models.DateTimeField(null=True, blank=True)
    executed_by_user_id = models.BigIntegerField(null=True, blank=True)
    witness_user_id = models.BigIntegerField(null=True, blank=True)
    certificate_reference = models.CharField(max_length=64, blank=True, default="")
    result = models.JSONField(default=dict, blank=True)

    cancelled_reason = models.TextField(blank=True, default="")

    class Meta:
        db_table = "retention_action"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant_id", "action_type", "status"]),
        ]

    def __str__(self) -> str:
        return f"{self.action_type} {self.record_class} [{self.status}]"


class LegalHold(TenantScopedModel):
    """
    Freezes every lifecycle transition of the records it covers.

    Scope: the tenant, optionally narrowed to record classes (empty means
    all), one patient, and a window on the record's creation basis.
    `version` guards concurrent release.
    """
    record_classes = models.JSONField(default=list, blank=True)
    patient_id = models.UUIDField(null=True, blank=True)
    date_from = models.DateTimeField(null=True, blank=True)
    date_to = models.DateTimeField(null=True, blank=True)

    status = models.CharField(max_length=16, choices=LegalHoldStatus.choices, default=LegalHoldStatus.ACTIVE,
                              db_index=True)
    reason = models.TextField()
    created_by_user_id = models.BigIntegerField(null=True, blank=True)

    released_by_user_id = models.BigIntegerField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    release_reason = models.TextField(blank=True, default="")

    expires_at = models.DateTimeField(null=True, blank=True)
    version = models.PositiveIntegerField(default=1)

    class Meta:
        db_table = "retention_legal_hold"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant_id", "status"]),
        ]

    def __str__(self) -> str:
        return f"hold {self.id} [{self.status}]"

    def is_in_force(self, at=None) -> bool:
        at = at or timezone.now()
        if self.status != LegalHoldStatus.ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > at

    def covers(self, record: RetentionRecord) -> bool:
        if record.tenant_id != self.tenant_id:
            return False
        if self.record_classes and record.record_class not in self.record_classes:
            return False
        # Records without a patient (audit batches) may contain that
        # patient's events, so a patient hold covers them too.
        if self.patient_id and record.patient_id and record.patient_id != self.patient_id:
            return False
        if self.date_from and record.created_at_basis < self.date_from:
            return False
        if self.date_to and record.created_at_basis > self.date_to:
            return False
        return True

    def record_filter(self) -> Q:
        """The same coverage rule as covers(), as a RetentionRecord filter."""
        q = Q(tenant_id=self.tenant_id)
        if self.record_classes:
            q &= Q(record_class__in=list(self.record_classes))
        if self.patient_id:
            q &= Q(patient_id=self.patient_id) | Q(patient_id__isnull=True)
        if self.date_from:
            q &= Q(created_at_basis__gte=self.date_from)
        if self.date_to:
            q &= Q(created_at_basis__lte=self.date_to)
        return q


class RetentionLock(models.Model):
    """
    One row per tenant. Destruction execution and hold creation both take
    it with SELECT ... FOR UPDATE, so a hold committed before execution is
    always seen by the execution's re-check.
    """
    tenant_id = models.UUIDField(primary_key=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "retention_lock"
