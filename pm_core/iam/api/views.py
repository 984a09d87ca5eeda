# pm_core/iam/api/views.py
from __future__ import annotations

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response

from pm_core.common.api.pagination import paginate
from pm_core.common.scope import get_scoped
from pm_core.common.views import AccessContextMixin
from pm_core.iam.api.serializers import (
    GrantRequestSerializer,
    RoleAssignmentSerializer,
    RoleCreateSerializer,
    RolePermissionsSerializer,
    RoleSerializer,
    RoleUpdateSerializer,
)
from pm_core.iam.authz import HasCorePermission
from pm_core.iam.models import Role, RoleAssignment
from pm_core.iam.permissions import PermissionCode
from pm_core.iam.selectors import get_role_by_code, list_assignments, list_roles
from pm_core.iam.services import AssignmentService, RoleService


class RoleViewSet(AccessContextMixin, viewsets.GenericViewSet):
    permission_classes = [HasCorePermission]

    serializer_class = RoleSerializer
    queryset = Role.objects.none()

    required_permissions = {
        "list": [],
        "retrieve": [],
        "create": [PermissionCode.ROLES_MANAGE],
        "partial_update": [PermissionCode.ROLES_MANAGE],
        "destroy": [PermissionCode.ROLES_MANAGE],
        "set_permissions": [PermissionCode.ROLES_MANAGE],
    }
    audit_target_type = "Role"

    @extend_schema(
        tags=["IAM"],
        parameters=[
            OpenApiParameter(name="include_inactive", type=OpenApiTypes.BOOL, location=OpenApiParameter.QUERY,
                             required=False),
        ],
    )
    def list(self, request):
        include_inactive = request.query_params.get("include_inactive") in ("1", "true", "True")
        return paginate(request, list_roles(include_inactive=include_inactive), RoleSerializer)

    @extend_schema(tags=["IAM"])
    def retrieve(self, request, pk=None):
        role = get_scoped(self.get_access_context(), Role, pk)
        return Response(RoleSerializer(role).data)

    @extend_schema(tags=["IAM"], request=RoleCreateSerializer, responses={201: RoleSerializer})
    def create(self, request):
        ser = RoleCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        role = RoleService.create_role(context=self.get_access_context(), **ser.validated_data)
        return Response(RoleSerializer(role).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["IAM"], request=RoleUpdateSerializer, responses={200: RoleSerializer})
    def partial_update(self, request, pk=None):
        ctx = self.get_access_context()
        role = get_scoped(ctx, Role, pk)
        ser = RoleUpdateSerializer(data=request.data, partial=True)
        ser.is_valid(raise_exception=True)
        role = RoleService.update_role(context=ctx, role=role, **ser.validated_data)
        return Response(RoleSerializer(role).data)

    @extend_schema(tags=["IAM"], responses={204: None})
    def destroy(self, request, pk=None):
        ctx = self.get_access_context()
        role = get_scoped(ctx, Role, pk)
        RoleService.delete_role(context=ctx, role=role)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @extend_schema(tags=["IAM"], request=RolePermissionsSerializer, responses={200: RoleSerializer})
    @action(detail=True, methods=["post"], url_path="set-permissions")
    def set_permissions(self, request, pk=None):
        ctx = self.get_access_context()
        role = get_scoped(ctx, Role, pk)
        ser = RolePermissionsSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        role = RoleService.set_permissions(context=ctx, role=role, permissions=ser.validated_data["permissions"])
        return Response(RoleSerializer(role).data)


class RoleAssignmentViewSet(AccessContextMixin, viewsets.GenericViewSet):
    """
    Grant / revoke / list role assignments inside the active tenant.
    GLOBAL assignments are only listed with include_global=true (global callers).
    """
    permission_classes = [HasCorePermission]

    serializer_class = RoleAssignmentSerializer
    queryset = RoleAssignment.objects.none()

    required_permissions = {
        "list": [PermissionCode.ASSIGNMENTS_MANAGE],
        "retrieve": [PermissionCode.ASSIGNMENTS_MANAGE],
        "create": [PermissionCode.ASSIGNMENTS_MANAGE],
        "destroy": [PermissionCode.ASSIGNMENTS_MANAGE],
    }
    audit_target_type = "RoleAssignment"

    @extend_schema(
        tags=["IAM"],
        parameters=[
            OpenApiParameter(name="user_id", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="role", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="include_global", type=OpenApiTypes.BOOL, location=OpenApiParameter.QUERY,
                             required=False),
        ],
    )
    def list(self, request):
        user_raw = request.query_params.get("user_id")
        user_id = None
        if user_raw not in (None, ""):
            try:
                user_id = int(user_raw)
            except ValueError:
                raise ValidationError({"user_id": "Invalid user_id (int expected)"})

        qs = list_assignments(
            self.get_access_context(),
            user_id=user_id,
            role_code=request.query_params.get("role") or None,
            include_global=request.query_params.get("include_global") in ("1", "true", "True"),
        )
        return paginate(request, qs, RoleAssignmentSerializer)

    @extend_schema(tags=["IAM"])
    def retrieve(self, request, pk=None):
        assignment = get_scoped(self.get_access_context(), RoleAssignment, pk)
        return Response(RoleAssignmentSerializer(assignment).data)

    @extend_schema(tags=["IAM"], request=GrantRequestSerializer, responses={201: RoleAssignmentSerializer})
    def create(self, request):
        ser = GrantRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        role = get_role_by_code(code=data["role"])
        if role is None:
            raise ValidationError({"role": "Unknown role."})

        assignment, created = AssignmentService.grant(
            context=self.get_access_context(),
            user_id=data["user_id"],
            role=role,
            tenant_id=data.get("tenant_id"),
            expires_at=data.get("expires_at"),
        )
        return Response(
            RoleAssignmentSerializer(assignment).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )

    @extend_schema(tags=["IAM"], responses={204: None})
    def destroy(self, request, pk=None):
        ctx = self.get_access_context()
        if ctx.is_global and ctx.active_tenant_id is None:
            assignment = get_scoped(ctx, RoleAssignment, pk, cross_tenant=True)
        else:
            assignment = get_scoped(ctx, RoleAssignment, pk)
        AssignmentService.revoke(context=ctx, assignment=assignment)
        return Response(status=status.HTTP_204_NO_CONTENT)
