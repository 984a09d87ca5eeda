# pm_core/audit/api/views.py
from __future__ import annotations

from datetime import timedelta

from django.utils import timezone
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response

from pm_core.audit.api.serializers import (
    AuditCorrectionRequestSerializer,
    AuditCorrectionResponseSerializer,
    AuditEntrySerializer,
    AuditSummarySerializer,
)
from pm_core.audit.filters import AuditEntryFilter
from pm_core.audit.models import AuditEntry
from pm_core.audit.selectors import list_entries, summarize
from pm_core.audit.services import AuditService
from pm_core.common.api.pagination import paginate
from pm_core.common.scope import get_scoped
from pm_core.common.views import AccessContextMixin
from pm_core.iam.authz import HasCorePermission
from pm_core.iam.permissions import PermissionCode

TRUTHY = ("1", "true", "True")

ALL_TENANTS_PARAM = OpenApiParameter(
    name="all_tenants",
    type=OpenApiTypes.BOOL,
    location=OpenApiParameter.QUERY,
    required=False,
    description="Global callers only: query every tenant (recorded as cross-tenant access).",
)


class AuditEntryViewSet(AccessContextMixin, viewsets.GenericViewSet):
    """
    Read-only query surface over the audit trail.
    Every query appends exactly one `audit.log.viewed` entry.
    """
    permission_classes = [HasCorePermission]

    serializer_class = AuditEntrySerializer
    queryset = AuditEntry.objects.none()
    lookup_field = "event_id"

    required_permissions = {
        "list": [PermissionCode.AUDIT_VIEW],
        "retrieve": [PermissionCode.AUDIT_VIEW],
        "summary": [PermissionCode.AUDIT_VIEW],
        "correct": [PermissionCode.AUDIT_CORRECT],
    }
    audit_target_type = "AuditEntry"

    def _filtered(self, request):
        ctx = self.get_access_context()
        qs = list_entries(ctx, cross_tenant=request.query_params.get("all_tenants") in TRUTHY)
        filterset = AuditEntryFilter(request.query_params, queryset=qs)
        if not filterset.is_valid():
            raise ValidationError(filterset.errors)
        return ctx, filterset.qs

    @staticmethod
    def _filters_for_log(request) -> dict:
        return {k: v for k, v in request.query_params.items() if k not in ("page", "page_size")}

    @extend_schema(
        tags=["Audit"],
        responses={200: AuditEntrySerializer(many=True)},
        parameters=[
            OpenApiParameter(name="actor_user_id", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY),
            OpenApiParameter(name="action", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY),
            OpenApiParameter(name="category", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY),
            OpenApiParameter(name="severity", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY),
            OpenApiParameter(name="target_type", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY),
            OpenApiParameter(name="target_id", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY),
            OpenApiParameter(name="involves_protected_data", type=OpenApiTypes.BOOL, location=OpenApiParameter.QUERY),
            OpenApiParameter(name="occurred_after", type=OpenApiTypes.DATETIME, location=OpenApiParameter.QUERY),
            OpenApiParameter(name="occurred_before", type=OpenApiTypes.DATETIME, location=OpenApiParameter.QUERY),
            ALL_TENANTS_PARAM,
        ],
    )
    def list(self, request):
        ctx, qs = self._filtered(request)

        def _after(rows):
            AuditService.record_view(ctx, view="list", filters=self._filters_for_log(request), returned=len(rows))

        return paginate(request, qs, AuditEntrySerializer, after_page=_after)

    @extend_schema(tags=["Audit"], responses={200: AuditEntrySerializer})
    def retrieve(self, request, event_id=None):
        ctx = self.get_access_context()
        entry = get_scoped(ctx, AuditEntry, event_id, field_name="event_id")
        AuditService.record_view(ctx, view="retrieve", filters={"event_id": str(entry.event_id)}, returned=1)
        return Response(AuditEntrySerializer(entry).data)

    @extend_schema(
        tags=["Audit"],
        responses={200: AuditSummarySerializer},
        parameters=[
            OpenApiParameter(name="days", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY,
                             description="Look-back period in days (default 30, max 3650)."),
            ALL_TENANTS_PARAM,
        ],
    )
    @action(detail=False, methods=["get"])
    def summary(self, request):
        ctx, qs = self._filtered(request)

        raw_days = request.query_params.get("days") or "30"
        try:
            days = int(raw_days)
        except ValueError:
            raise ValidationError({"days": "Invalid days (int expected)"})
        days = max(1, min(days, 3650))

        until = timezone.now()
        data = summarize(qs, since=until - timedelta(days=days), until=until)
        AuditService.record_view(ctx, view="summary", filters=self._filters_for_log(request), returned=data["total"])
        return Response(AuditSummarySerializer(data).data)

    @extend_schema(
        tags=["Audit"],
        request=AuditCorrectionRequestSerializer,
        responses={201: AuditCorrectionResponseSerializer},
    )
    @action(detail=True, methods=["post"])
    def correct(self, request, event_id=None):
        ctx = self.get_access_context(require_tenant=True)
        original = get_scoped(ctx, AuditEntry, event_id, field_name="event_id")

        ser = AuditCorrectionRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        entry = AuditService.append_correction(
            context=ctx,
            original=original,
            reason=ser.validated_data["reason"],
            corrected=ser.validated_data.get("corrected"),
        )
        return Response(
            {"event_id": str(entry["event_id"]), "corrects_event_id": str(original.event_id)},
            status=status.HTTP_201_CREATED,
        )
