# pm_core/iam/api/serializers.py
from __future__ import annotations

from rest_framework import serializers

from pm_core.iam.models import Role, RoleAssignment, RoleScope
from pm_core.iam.permissions import ALL_PERMISSION_CODES


class RoleSerializer(serializers.ModelSerializer):
    class Meta:
        model = Role
        fields = [
            "id",
            "code",
            "name",
            "scope_kind",
            "permissions",
            "is_system",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class RoleCreateSerializer(serializers.Serializer):
    code = serializers.SlugField(max_length=64)
    name = serializers.CharField(max_length=128)
    scope_kind = serializers.ChoiceField(choices=RoleScope.choices)
    permissions = serializers.ListField(child=serializers.CharField(), allow_empty=True)

    def validate_permissions(self, value):
        unknown = [c for c in value if c not in ALL_PERMISSION_CODES]
        if unknown:
            raise serializers.ValidationError([f"Unknown permission code: {c}" for c in unknown])
        return value


class RoleUpdateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=128, required=False)
    is_active = serializers.BooleanField(required=False)


class RolePermissionsSerializer(serializers.Serializer):
    permissions = serializers.ListField(child=serializers.CharField(), allow_empty=True)


class RoleAssignmentSerializer(serializers.ModelSerializer):
    role_code = serializers.CharField(source="role.code", read_only=True)
    scope_kind = serializers.CharField(source="role.scope_kind", read_only=True)

    class Meta:
        model = RoleAssignment
        fields = [
            "id",
            "user_id",
            "role_id",
            "role_code",
            "scope_kind",
            "tenant_id",
            "expires_at",
            "granted_by_user_id",
            "created_at",
        ]
        read_only_fields = fields


class GrantRequestSerializer(serializers.Serializer):
    user_id = serializers.IntegerField(min_value=1)
    role = serializers.SlugField(help_text="Role code")
    # Ignored for tenant roles: the grant always lands in the active tenant.
    tenant_id = serializers.UUIDField(required=False, allow_null=True)
    expires_at = serializers.DateTimeField(required=False, allow_null=True)
