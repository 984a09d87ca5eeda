from __future__ import annotations

import uuid

from django.utils.deprecation import MiddlewareMixin


class RequestMetadataMiddleware(MiddlewareMixin):
    """
    Attaches request_id and client_ip to every request.

    Deliberately does NOT resolve the caller's tenant or permissions: views
    build an AccessContext explicitly (pm_core.common.views.AccessContextMixin)
    so the enforcement point is visible at each call site.
    """

    REQUEST_ID_META_KEY = "HTTP_X_REQUEST_ID"
    FORWARDED_FOR_META_KEY = "HTTP_X_FORWARDED_FOR"

    def _client_ip(self, request) -> str | None:
        forwarded = request.META.get(self.FORWARDED_FOR_META_KEY)
        if forwarded:
            return forwarded.split(",")[0].strip() or None
        return request.META.get("REMOTE_ADDR") or None

    def process_request(self, request):
        incoming = (request.META.get(self.REQUEST_ID_META_KEY) or "").strip()
        request.request_id = incoming[:64] if incoming else uuid.uuid4().hex
        request.client_ip = self._client_ip(request)
        return None

    def process_response(self, request, response):
        rid = getattr(request, "request_id", None)
        if rid:
            response["X-Request-Id"] = rid
        return response
