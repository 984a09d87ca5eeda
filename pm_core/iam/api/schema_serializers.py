# pm_core/iam/api/schema_serializers.py
from __future__ import annotations

from rest_framework import serializers


class LoginRequestSerializer(serializers.Serializer):
    username = serializers.CharField()
    password = serializers.CharField()


class DetailResponseSerializer(serializers.Serializer):
    detail = serializers.CharField()


class SessionUserSerializer(serializers.Serializer):
    id = serializers.IntegerField()
    username = serializers.CharField(allow_null=True, required=False)
    email = serializers.EmailField(allow_null=True, required=False)


class TenantMiniSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    code = serializers.CharField()
    name = serializers.CharField()
    status = serializers.CharField()


class AssignmentMiniSerializer(serializers.Serializer):
    role_code = serializers.CharField()
    role_name = serializers.CharField()
    scope_kind = serializers.CharField()
    tenant_id = serializers.UUIDField(allow_null=True)
    expires_at = serializers.DateTimeField(allow_null=True)


class SessionContextResponseSerializer(serializers.Serializer):
    user = SessionUserSerializer()
    is_global = serializers.BooleanField()
    active_tenant = TenantMiniSerializer(allow_null=True)
    # Enumerated tenants; empty for global callers (who may act on any tenant).
    tenants = TenantMiniSerializer(many=True)
    role_codes = serializers.ListField(child=serializers.CharField())
    permissions = serializers.ListField(child=serializers.CharField())
    assignments = AssignmentMiniSerializer(many=True)
    server_time = serializers.DateTimeField()
