# pm_core/iam/api/session.py

from __future__ import annotations

from django.utils import timezone
from drf_spectacular.utils import extend_schema
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from pm_core.common.views import AccessContextMixin
from pm_core.iam.api.schema_serializers import SessionContextResponseSerializer
from pm_core.iam.resolver import resolve_permissions
from pm_core.iam.selectors import user_assignment_summary
from pm_core.tenants.selectors import list_tenants


class SessionContextView(AccessContextMixin, APIView):
    """
    Frontend bootstrap endpoint: the caller's AccessContext.

    - X-Tenant-Id optional; when given it must be a tenant the caller can
      act on (otherwise 404 and a CRITICAL audit entry).
    - Without it, a caller with exactly one tenant gets that tenant.
    """
    permission_classes = [IsAuthenticated]

    @extend_schema(responses={200: SessionContextResponseSerializer}, tags=["IAM"])
    def get(self, request):
        ctx = self.get_access_context()
        user = request.user

        active_tenant = None
        if ctx.active_tenant_id is not None:
            found = list_tenants(tenant_ids=[ctx.active_tenant_id])
            active_tenant = found[0] if found else None

        tenants = [] if ctx.is_global else list_tenants(tenant_ids=ctx.authorized_tenant_ids)

        return Response(
            {
                "user": {
                    "id": user.id,
                    "username": getattr(user, "username", None),
                    "email": getattr(user, "email", None) or None,
                },
                "is_global": ctx.is_global,
                "active_tenant": active_tenant,
                "tenants": tenants,
                "role_codes": sorted(ctx.role_codes),
                "permissions": sorted(resolve_permissions(ctx)),
                "assignments": user_assignment_summary(user_id=user.id),
                "server_time": timezone.now(),
            }
        )
