# pm_core/retention/api/serializers.py
from __future__ import annotations

from rest_framework import serializers

from pm_core.retention.models import (
    DestructionMethod,
    LegalHold,
    RetentionAction,
    RetentionBasis,
    RetentionPolicy,
    RetentionRecord,
)


class RetentionPolicySerializer(serializers.ModelSerializer):
    class Meta:
        model = RetentionPolicy
        fields = [
            "id",
            "record_class",
            "retention_days",
            "basis",
            "archive_after_days",
            "destruction_method",
            "minor_extension_days",
            "notify_before_archive_days",
            "auto_extend_on_access",
            "is_active",
            "description",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class RetentionPolicyCreateSerializer(serializers.Serializer):
    record_class = serializers.CharField(max_length=64)
    retention_days = serializers.IntegerField(min_value=1)
    archive_after_days = serializers.IntegerField(min_value=1)
    basis = serializers.ChoiceField(choices=RetentionBasis.choices, default=RetentionBasis.CREATED)
    destruction_method = serializers.ChoiceField(choices=DestructionMethod.choices, default=DestructionMethod.PURGE)
    minor_extension_days = serializers.IntegerField(min_value=0, required=False, allow_null=True, default=None)
    notify_before_archive_days = serializers.IntegerField(min_value=1, max_value=365, required=False, allow_null=True,
                                                          default=None)
    auto_extend_on_access = serializers.BooleanField(required=False, default=False)
    description = serializers.CharField(required=False, allow_blank=True, default="")


class RetentionPolicyUpdateSerializer(serializers.Serializer):
    retention_days = serializers.IntegerField(min_value=1, required=False)
    archive_after_days = serializers.IntegerField(min_value=1, required=False)
    basis = serializers.ChoiceField(choices=RetentionBasis.choices, required=False)
    destruction_method = serializers.ChoiceField(choices=DestructionMethod.choices, required=False)
    minor_extension_days = serializers.IntegerField(min_value=0, required=False, allow_null=True)
    notify_before_archive_days = serializers.IntegerField(min_value=1, max_value=365, required=False, allow_null=True)
    auto_extend_on_access = serializers.BooleanField(required=False)
    is_active = serializers.BooleanField(required=False)
    description = serializers.CharField(required=False, allow_blank=True)


class RetentionRecordSerializer(serializers.ModelSerializer):
    class Meta:
        model = RetentionRecord
        fields = [
            "id",
            "tenant_id",
            "record_class",
            "record_key",
            "patient_id",
            "created_at_basis",
            "last_activity_at",
            "state",
            "state_changed_at",
            "is_permanent",
        ]
        read_only_fields = fields


class RetentionActionSerializer(serializers.ModelSerializer):
    record_count = serializers.SerializerMethodField()

    class Meta:
        model = RetentionAction
        fields = [
            "id",
            "tenant_id",
            "action_type",
            "status",
            "record_class",
            "record_count",
            "approved_by_user_id",
            "approved_at",
            "approval_note",
            "scheduled_for",
            "next_evaluation_at",
            "legal_hold_cleared",
            "deferral_count",
            "executed_at",
            "executed_by_user_id",
            "witness_user_id",
            "certificate_reference",
            "result",
            "cancelled_reason",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_record_count(self, obj) -> int:
        return obj.records.count()


class ActionApproveSerializer(serializers.Serializer):
    note = serializers.CharField(required=False, allow_blank=True, default="")
    scheduled_for = serializers.DateTimeField(required=False, allow_null=True)


class ActionExecuteSerializer(serializers.Serializer):
    witness_user_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField()


class LegalHoldSerializer(serializers.ModelSerializer):
    class Meta:
        model = LegalHold
        fields = [
            "id",
            "tenant_id",
            "record_classes",
            "patient_id",
            "date_from",
            "date_to",
            "status",
            "reason",
            "created_by_user_id",
            "released_by_user_id",
            "released_at",
            "release_reason",
            "expires_at",
            "version",
            "created_at",
        ]
        read_only_fields = fields


class LegalHoldCreateSerializer(serializers.Serializer):
    reason = serializers.CharField()
    record_classes = serializers.ListField(child=serializers.CharField(max_length=64), required=False, default=list)
    patient_id = serializers.UUIDField(required=False, allow_null=True)
    date_from = serializers.DateTimeField(required=False, allow_null=True)
    date_to = serializers.DateTimeField(required=False, allow_null=True)
    expires_at = serializers.DateTimeField(required=False, allow_null=True)
    # Overwritten with the active tenant; a different value is recorded.
    tenant_id = serializers.UUIDField(required=False, allow_null=True)


class LegalHoldReleaseSerializer(serializers.Serializer):
    reason = serializers.CharField()
    version = serializers.IntegerField(min_value=1, help_text="Version read by the caller (optimistic check).")


class RetentionReportSerializer(serializers.Serializer):
    generated_at = serializers.DateTimeField()
    total = serializers.IntegerField()
    by_state = serializers.DictField(child=serializers.IntegerField())
    on_hold = serializers.IntegerField()
    expiring_soon = serializers.IntegerField()
    expiring_within_days = serializers.IntegerField()
    active_holds = serializers.IntegerField()
