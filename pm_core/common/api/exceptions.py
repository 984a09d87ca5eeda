# pm_core/common/api/exceptions.py

from __future__ import annotations

import uuid
from typing import Any

from django.core.exceptions import ImproperlyConfigured
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    NotAuthenticated,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler


def ensure_request_id(request) -> str:
    """
    Ensures request has a stable request_id attribute and returns it.
    Safe to call from middleware and DRF exception handler.
    """
    rid = getattr(request, "request_id", None) if request is not None else None
    if not rid:
        rid = uuid.uuid4().hex
        if request is not None:
            setattr(request, "request_id", rid)
    return rid


def build_error_envelope(*, request=None, code: str, message: str, details: Any = None) -> dict[str, Any]:
    """
    Canonical error envelope.
    Reusable from Django middleware (JsonResponse) and DRF (Response).
    """
    rid = ensure_request_id(request)
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": rid,
        }
    }


# -------------------------------------------------------------------
# Core error taxonomy
# -------------------------------------------------------------------

class Unauthenticated(NotAuthenticated):
    """No valid identity behind the request."""
    default_detail = "Authentication credentials were not provided."
    default_code = "not_authenticated"


class Forbidden(PermissionDenied):
    """Resolved permissions are insufficient for the requested operation."""
    default_detail = "You do not have permission to perform this action."
    default_code = "permission_denied"


class NoTenantContext(APIException):
    """
    The operation needs an active tenant and none could be resolved
    (no header, several authorized tenants, or tenant not active).
    """
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "No active tenant. Provide X-Tenant-Id for a tenant you belong to."
    default_code = "no_tenant_context"


class ScopeViolation(NotFound):
    """
    An operation tried to reach outside the caller's authorized tenants.

    Rendered as a plain 404 so callers cannot discover cross-tenant rows.
    The full detail (actor, tenants, target) lives only in the CRITICAL
    audit entry written before this is raised.
    """
    default_detail = "Not found."
    default_code = "not_found"

    def __init__(self, *, reason: str = "", target_type: str = "", target_id: Any = None, target_tenant_id: Any = None):
        super().__init__(detail=self.default_detail, code=self.default_code)
        self.reason = reason
        self.target_type = target_type
        self.target_id = target_id
        self.target_tenant_id = target_tenant_id


class ScopeConfigurationError(ImproperlyConfigured):
    """
    A model reached the scoping layer without being registered as tenant-
    or globally-scoped. The operation is refused rather than run unscoped.
    """


class ConflictError(APIException):
    """
    409 Conflict that still flows through the global exception handler.
    Use when a state machine or a version check refuses an action.
    """
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict."
    default_code = "conflict"

    def __init__(self, detail=None, code=None):
        super().__init__(detail=detail or self.default_detail, code=code or self.default_code)


class HoldActive(APIException):
    """
    Destruction refused because an ACTIVE legal hold covers the records.
    The action has already been moved to DEFERRED when this is raised.
    """
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Destruction deferred: an active legal hold covers these records."
    default_code = "hold_active"

    def __init__(self, *, action_id: Any = None, hold_ids: list[str] | None = None):
        super().__init__(detail=self.default_detail, code=self.default_code)
        self.action_id = action_id
        self.hold_ids = list(hold_ids or [])


def _code_for(exc: Exception, http_status: int) -> str:
    if isinstance(exc, ValidationError):
        return "validation_error"
    if isinstance(exc, (NotAuthenticated, AuthenticationFailed)):
        return "not_authenticated"
    if isinstance(exc, PermissionDenied):
        return "permission_denied"
    if isinstance(exc, Http404):
        return "not_found"
    if isinstance(exc, APIException):
        return getattr(exc, "default_code", "api_error") or "api_error"
    if http_status >= 500:
        return "server_error"
    return "error"


def api_exception_handler(exc: Exception, context: dict[str, Any]):
    request = context.get("request")
    response = drf_exception_handler(exc, context)

    # Truly unhandled error (includes ScopeConfigurationError: fail closed)
    if response is None:
        return Response(
            build_error_envelope(
                request=request,
                code="server_error",
                message="Unexpected server error.",
                details=None,
            ),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    http_status = response.status_code
    code = _code_for(exc, http_status)

    # Never leak which tenant owns the row
    if isinstance(exc, ScopeViolation):
        return Response(
            build_error_envelope(request=request, code="not_found", message="Not found.", details=None),
            status=status.HTTP_404_NOT_FOUND,
        )

    data = response.data

    # Message + details rules:
    # 1) {"detail": "..."} only -> message=detail, details=None
    # 2) {"detail": "...", ...} -> message=detail, details={...without detail}
    # 3) otherwise -> message="Request failed.", details=data
    message = "Request failed."
    details = data

    if isinstance(data, dict) and "detail" in data:
        message = str(data.get("detail"))
        rest = {k: v for k, v in data.items() if k != "detail"}
        details = rest or None

    if isinstance(exc, HoldActive):
        details = {"action_id": str(exc.action_id) if exc.action_id else None, "hold_ids": exc.hold_ids}

    return Response(
        build_error_envelope(
            request=request,
            code=code,
            message=message,
            details=details,
        ),
        status=http_status,
        headers=response.headers,
    )
