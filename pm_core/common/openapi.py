# pm_core/common/openapi.py
from __future__ import annotations

from drf_spectacular.openapi import AutoSchema
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter


class CoreAutoSchema(AutoSchema):
    """
    Adds the optional X-Tenant-Id header to every endpoint that builds an
    AccessContext, so Swagger users can pick the active clinic.
    """

    TENANT_HEADER = OpenApiParameter(
        name="X-Tenant-Id",
        type=OpenApiTypes.UUID,
        location=OpenApiParameter.HEADER,
        required=False,
        description=(
            "Active tenant (clinic). Required when the caller belongs to more than one tenant "
            "or holds a global role and the operation is tenant-scoped."
        ),
    )

    def _is_unscoped_endpoint(self) -> bool:
        view = getattr(self, "view", None)
        if view is None:
            return False

        if view.__class__.__name__ in {"SpectacularAPIView", "SpectacularSwaggerView"}:
            return True

        module = view.__class__.__module__ or ""
        return module.startswith("pm_core.iam.api.auth")

    def get_override_parameters(self):
        params = list(super().get_override_parameters() or [])

        if not self._is_unscoped_endpoint():
            existing = {p.name.lower() for p in params}
            if self.TENANT_HEADER.name.lower() not in existing:
                params.append(self.TENANT_HEADER)

        return params
