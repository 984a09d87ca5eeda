# pm_core/retention/api/views.py
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
from pm_core.iam.authz import HasCorePermission
from pm_core.iam.permissions import PermissionCode
from pm_core.retention.api.serializers import (
    ActionApproveSerializer,
    ActionExecuteSerializer,
    LegalHoldCreateSerializer,
    LegalHoldReleaseSerializer,
    LegalHoldSerializer,
    ReasonSerializer,
    RetentionActionSerializer,
    RetentionPolicyCreateSerializer,
    RetentionPolicySerializer,
    RetentionPolicyUpdateSerializer,
    RetentionRecordSerializer,
    RetentionReportSerializer,
)
from pm_core.retention.models import LegalHold, RetentionAction, RetentionPolicy, RetentionRecord
from pm_core.retention.selectors import list_actions, list_holds, list_policies, list_records, retention_report
from pm_core.retention.services import LegalHoldService, RetentionActionService, RetentionPolicyService

TRUTHY = ("1", "true", "True")

ALL_TENANTS_PARAM = OpenApiParameter(
    name="all_tenants",
    type=OpenApiTypes.BOOL,
    location=OpenApiParameter.QUERY,
    required=False,
    description="Global callers only: query every tenant (recorded as cross-tenant access).",
)


def _all_tenants(request) -> bool:
    return request.query_params.get("all_tenants") in TRUTHY


def _get_tenant_row(ctx, model, pk):
    """Global callers without an active tenant reach rows through the audited cross-tenant path."""
    if ctx.is_global and ctx.active_tenant_id is None:
        return get_scoped(ctx, model, pk, cross_tenant=True)
    return get_scoped(ctx, model, pk)


class RetentionPolicyViewSet(AccessContextMixin, viewsets.GenericViewSet):
    permission_classes = [HasCorePermission]

    serializer_class = RetentionPolicySerializer
    queryset = RetentionPolicy.objects.none()

    required_permissions = {
        "list": [PermissionCode.RETENTION_ACTIONS_VIEW],
        "retrieve": [PermissionCode.RETENTION_ACTIONS_VIEW],
        "create": [PermissionCode.RETENTION_POLICIES_MANAGE],
        "partial_update": [PermissionCode.RETENTION_POLICIES_MANAGE],
    }
    audit_target_type = "RetentionPolicy"

    @extend_schema(tags=["Retention"])
    def list(self, request):
        return paginate(request, list_policies(), RetentionPolicySerializer)

    @extend_schema(tags=["Retention"])
    def retrieve(self, request, pk=None):
        policy = get_scoped(self.get_access_context(), RetentionPolicy, pk)
        return Response(RetentionPolicySerializer(policy).data)

    @extend_schema(tags=["Retention"], request=RetentionPolicyCreateSerializer,
                   responses={201: RetentionPolicySerializer})
    def create(self, request):
        ser = RetentionPolicyCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        policy = RetentionPolicyService.create_policy(context=self.get_access_context(), **ser.validated_data)
        return Response(RetentionPolicySerializer(policy).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Retention"], request=RetentionPolicyUpdateSerializer,
                   responses={200: RetentionPolicySerializer})
    def partial_update(self, request, pk=None):
        ctx = self.get_access_context()
        policy = get_scoped(ctx, RetentionPolicy, pk)
        ser = RetentionPolicyUpdateSerializer(data=request.data, partial=True)
        ser.is_valid(raise_exception=True)
        policy = RetentionPolicyService.update_policy(context=ctx, policy=policy, **ser.validated_data)
        return Response(RetentionPolicySerializer(policy).data)


class RetentionActionViewSet(AccessContextMixin, viewsets.GenericViewSet):
    """
    Destruction proposals and the lifecycle ledger (archive, hold, release).
    Destruction needs approval, then execution under the legal hold re-check.
    """
    permission_classes = [HasCorePermission]

    serializer_class = RetentionActionSerializer
    queryset = RetentionAction.objects.none()

    required_permissions = {
        "list": [PermissionCode.RETENTION_ACTIONS_VIEW],
        "retrieve": [PermissionCode.RETENTION_ACTIONS_VIEW],
        "approve": [PermissionCode.RETENTION_ACTIONS_APPROVE],
        "cancel": [PermissionCode.RETENTION_ACTIONS_APPROVE],
        "execute": [PermissionCode.RETENTION_ACTIONS_EXECUTE],
    }
    audit_target_type = "RetentionAction"

    @extend_schema(
        tags=["Retention"],
        parameters=[
            OpenApiParameter(name="status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="action_type", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY,
                             required=False),
            OpenApiParameter(name="record_class", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY,
                             required=False),
            ALL_TENANTS_PARAM,
        ],
    )
    def list(self, request):
        qs = list_actions(
            self.get_access_context(),
            status=request.query_params.get("status") or None,
            action_type=request.query_params.get("action_type") or None,
            record_class=request.query_params.get("record_class") or None,
            cross_tenant=_all_tenants(request),
        )
        return paginate(request, qs, RetentionActionSerializer)

    @extend_schema(tags=["Retention"])
    def retrieve(self, request, pk=None):
        obj = _get_tenant_row(self.get_access_context(), RetentionAction, pk)
        return Response(RetentionActionSerializer(obj).data)

    @extend_schema(tags=["Retention"], request=ActionApproveSerializer, responses={200: RetentionActionSerializer})
    @action(detail=True, methods=["post"])
    def approve(self, request, pk=None):
        ctx = self.get_access_context()
        obj = _get_tenant_row(ctx, RetentionAction, pk)
        ser = ActionApproveSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        obj = RetentionActionService.approve(
            context=ctx,
            action=obj,
            note=ser.validated_data.get("note", ""),
            scheduled_for=ser.validated_data.get("scheduled_for"),
        )
        return Response(RetentionActionSerializer(obj).data)

    @extend_schema(tags=["Retention"], request=ReasonSerializer, responses={200: RetentionActionSerializer})
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        ctx = self.get_access_context()
        obj = _get_tenant_row(ctx, RetentionAction, pk)
        ser = ReasonSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        obj = RetentionActionService.cancel(context=ctx, action=obj, reason=ser.validated_data["reason"])
        return Response(RetentionActionSerializer(obj).data)

    @extend_schema(
        tags=["Retention"],
        request=ActionExecuteSerializer,
        responses={200: RetentionActionSerializer},
        description="409 hold_active when a legal hold covers the records; the action is then DEFERRED.",
    )
    @action(detail=True, methods=["post"])
    def execute(self, request, pk=None):
        ctx = self.get_access_context()
        obj = _get_tenant_row(ctx, RetentionAction, pk)
        ser = ActionExecuteSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        obj = RetentionActionService.execute_destruction(
            context=ctx,
            action=obj,
            witness_user_id=ser.validated_data.get("witness_user_id"),
        )
        return Response(RetentionActionSerializer(obj).data)


class LegalHoldViewSet(AccessContextMixin, viewsets.GenericViewSet):
    permission_classes = [HasCorePermission]

    serializer_class = LegalHoldSerializer
    queryset = LegalHold.objects.none()

    required_permissions = {
        "list": [PermissionCode.LEGAL_HOLDS_MANAGE],
        "retrieve": [PermissionCode.LEGAL_HOLDS_MANAGE],
        "create": [PermissionCode.LEGAL_HOLDS_MANAGE],
        "release": [PermissionCode.LEGAL_HOLDS_MANAGE],
    }
    audit_target_type = "LegalHold"

    @extend_schema(
        tags=["Retention"],
        parameters=[
            OpenApiParameter(name="status", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            ALL_TENANTS_PARAM,
        ],
    )
    def list(self, request):
        qs = list_holds(
            self.get_access_context(),
            status=request.query_params.get("status") or None,
            cross_tenant=_all_tenants(request),
        )
        return paginate(request, qs, LegalHoldSerializer)

    @extend_schema(tags=["Retention"])
    def retrieve(self, request, pk=None):
        hold = _get_tenant_row(self.get_access_context(), LegalHold, pk)
        return Response(LegalHoldSerializer(hold).data)

    @extend_schema(tags=["Retention"], request=LegalHoldCreateSerializer, responses={201: LegalHoldSerializer})
    def create(self, request):
        ctx = self.get_access_context(require_tenant=True)
        ser = LegalHoldCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        hold = LegalHoldService.create_hold(context=ctx, **ser.validated_data)
        return Response(LegalHoldSerializer(hold).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Retention"], request=LegalHoldReleaseSerializer, responses={200: LegalHoldSerializer})
    @action(detail=True, methods=["post"])
    def release(self, request, pk=None):
        ctx = self.get_access_context()
        hold = _get_tenant_row(ctx, LegalHold, pk)
        ser = LegalHoldReleaseSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        hold = LegalHoldService.release_hold(
            context=ctx,
            hold=hold,
            reason=ser.validated_data["reason"],
            expected_version=ser.validated_data["version"],
        )
        return Response(LegalHoldSerializer(hold).data)


class RetentionRecordViewSet(AccessContextMixin, viewsets.GenericViewSet):
    permission_classes = [HasCorePermission]

    serializer_class = RetentionRecordSerializer
    queryset = RetentionRecord.objects.none()

    required_permissions = {
        "list": [PermissionCode.RETENTION_ACTIONS_VIEW],
        "report": [PermissionCode.RETENTION_ACTIONS_VIEW],
    }
    audit_target_type = "RetentionRecord"

    @extend_schema(
        tags=["Retention"],
        parameters=[
            OpenApiParameter(name="record_class", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY,
                             required=False),
            OpenApiParameter(name="state", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            ALL_TENANTS_PARAM,
        ],
    )
    def list(self, request):
        qs = list_records(
            self.get_access_context(),
            record_class=request.query_params.get("record_class") or None,
            state=request.query_params.get("state") or None,
            cross_tenant=_all_tenants(request),
        )
        return paginate(request, qs, RetentionRecordSerializer)

    @extend_schema(
        tags=["Retention"],
        responses={200: RetentionReportSerializer},
        parameters=[
            OpenApiParameter(name="days", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY,
                             description="Expiring-soon window in days (default 30, max 3650)."),
            ALL_TENANTS_PARAM,
        ],
    )
    @action(detail=False, methods=["get"])
    def report(self, request):
        raw_days = request.query_params.get("days") or "30"
        try:
            days = int(raw_days)
        except ValueError:
            raise ValidationError({"days": "Invalid days (int expected)"})
        days = max(1, min(days, 3650))

        records = list_records(self.get_access_context(), cross_tenant=_all_tenants(request))
        data = retention_report(records, expiring_within_days=days)
        return Response(RetentionReportSerializer(data).data)
