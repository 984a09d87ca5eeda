# pm_core/audit/api/serializers.py
from __future__ import annotations

from rest_framework import serializers

from pm_core.audit.models import AuditEntry


class AuditEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = AuditEntry
        fields = [
            "sequence",
            "event_id",
            "occurred_at",
            "recorded_at",
            "actor_type",
            "actor_user_id",
            "action",
            "category",
            "severity",
            "target_type",
            "target_id",
            "tenant_id",
            "involves_protected_data",
            "protected_data_categories",
            "outcome",
            "outcome_reason",
            "before",
            "after",
            "metadata",
            "ip_address",
            "request_id",
            "corrects_event_id",
            "is_permanent",
        ]
        read_only_fields = fields


class AuditCorrectionRequestSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255)
    corrected = serializers.JSONField(required=False, allow_null=True)


class AuditCorrectionResponseSerializer(serializers.Serializer):
    event_id = serializers.UUIDField()
    corrects_event_id = serializers.UUIDField()


class CountRowSerializer(serializers.Serializer):
    count = serializers.IntegerField()


class AuditSummarySerializer(serializers.Serializer):
    since = serializers.DateTimeField(allow_null=True)
    until = serializers.DateTimeField(allow_null=True)
    total = serializers.IntegerField()
    security_events = serializers.IntegerField()
    critical = serializers.IntegerField()
    protected_data_access = serializers.IntegerField()
    failures = serializers.IntegerField()
    by_severity = serializers.DictField(child=serializers.IntegerField())
    by_action = serializers.ListField(child=serializers.DictField())
    by_target_type = serializers.ListField(child=serializers.DictField())
    top_actors = serializers.ListField(child=serializers.DictField())
