# pm_core/common/views.py
from __future__ import annotations

from pm_core.iam.context import AccessContext, build_context_from_request


class AccessContextMixin:
    """
    Gives a view an explicit AccessContext for the current request.

    Built on first use and cached on the request, so the permission class
    and the handler see the same context. Nothing is attached to the
    request before authentication runs.
    """

    def get_access_context(self, *, require_tenant: bool = False) -> AccessContext:
        request = self.request
        ctx = getattr(request, "access_context", None)
        if ctx is None:
            ctx = build_context_from_request(request)
            request.access_context = ctx
        if require_tenant:
            ctx.require_tenant()
        return ctx
