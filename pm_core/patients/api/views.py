# pm_core/patients/api/views.py
from __future__ import annotations

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status, viewsets
from rest_framework.response import Response

from pm_core.common.api.pagination import paginate
from pm_core.common.scope import get_scoped
from pm_core.common.views import AccessContextMixin
from pm_core.iam.authz import HasCorePermission
from pm_core.iam.permissions import PermissionCode
from pm_core.patients.api.serializers import PatientCreateSerializer, PatientSerializer, PatientUpdateSerializer
from pm_core.patients.models import Patient
from pm_core.patients.selectors import search_patients
from pm_core.patients.services import PatientService


class PatientViewSet(AccessContextMixin, viewsets.GenericViewSet):
    permission_classes = [HasCorePermission]

    serializer_class = PatientSerializer
    queryset = Patient.objects.none()

    required_permissions = {
        "list": [PermissionCode.PATIENTS_VIEW],
        "retrieve": [PermissionCode.PATIENTS_VIEW],
        "create": [PermissionCode.PATIENTS_CREATE],
        "partial_update": [PermissionCode.PATIENTS_UPDATE],
        "destroy": [PermissionCode.PATIENTS_DELETE],
    }
    audit_target_type = "Patient"

    @extend_schema(
        tags=["Patients"],
        parameters=[
            OpenApiParameter(name="q", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def list(self, request):
        ctx = self.get_access_context(require_tenant=True)
        q = request.query_params.get("q", "").strip()
        qs = search_patients(ctx, q=q)

        def _after(rows):
            PatientService.record_list(ctx, returned=len(rows), q=q)

        return paginate(request, qs, PatientSerializer, after_page=_after)

    @extend_schema(tags=["Patients"])
    def retrieve(self, request, pk=None):
        ctx = self.get_access_context(require_tenant=True)
        patient = get_scoped(ctx, Patient, pk)
        PatientService.record_view(ctx, patient=patient)
        return Response(PatientSerializer(patient).data)

    @extend_schema(tags=["Patients"], request=PatientCreateSerializer, responses={201: PatientSerializer})
    def create(self, request):
        ctx = self.get_access_context(require_tenant=True)
        ser = PatientCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        patient = PatientService.create_patient(context=ctx, data=ser.validated_data)
        return Response(PatientSerializer(patient).data, status=status.HTTP_201_CREATED)

    @extend_schema(tags=["Patients"], request=PatientUpdateSerializer, responses={200: PatientSerializer})
    def partial_update(self, request, pk=None):
        ctx = self.get_access_context(require_tenant=True)
        patient = get_scoped(ctx, Patient, pk)
        ser = PatientUpdateSerializer(data=request.data, partial=True)
        ser.is_valid(raise_exception=True)
        patient = PatientService.update_patient(context=ctx, patient=patient, data=ser.validated_data)
        return Response(PatientSerializer(patient).data)

    @extend_schema(tags=["Patients"], responses={204: None})
    def destroy(self, request, pk=None):
        ctx = self.get_access_context(require_tenant=True)
        patient = get_scoped(ctx, Patient, pk)
        PatientService.delete_patient(context=ctx, patient=patient)
        return Response(status=status.HTTP_204_NO_CONTENT)
