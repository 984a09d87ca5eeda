# pm_core/iam/api/auth.py

from __future__ import annotations

from datetime import timedelta
from typing import Any

from django.conf import settings
from drf_spectacular.utils import extend_schema
from rest_framework import status
from rest_framework.exceptions import AuthenticationFailed, ValidationError
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework_simplejwt.exceptions import InvalidToken, TokenError
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer, TokenRefreshSerializer

from pm_core.audit.constants import AuditAction
from pm_core.audit.models import AuditCategory, AuditOutcome
from pm_core.audit.recorder import EventSpec, audit
from pm_core.iam.api.schema_serializers import DetailResponseSerializer, LoginRequestSerializer
from pm_core.iam.context import AccessContext


def _seconds(value: Any) -> int:
    """
    Convert a JWT lifetime setting into seconds.
    Supports timedelta OR int/float (already seconds).
    """
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    try:
        return int(value)
    except (TypeError, ValueError):
        # 0 means "session cookie"
        return 0


def _jwt_cfg() -> dict:
    return getattr(settings, "SIMPLE_JWT", {}) or {}


def _set_auth_cookies(response: Response, *, access: str, refresh: str) -> None:
    jwt_cfg = _jwt_cfg()

    secure = bool(jwt_cfg.get("AUTH_COOKIE_SECURE", False))
    samesite = jwt_cfg.get("AUTH_COOKIE_SAMESITE", "Lax")

    response.set_cookie(
        jwt_cfg.get("AUTH_COOKIE", "pm_access"),
        access,
        max_age=_seconds(jwt_cfg.get("ACCESS_TOKEN_LIFETIME", timedelta(minutes=10))),
        httponly=True,
        secure=secure,
        samesite=samesite,
        path="/",
    )
    response.set_cookie(
        jwt_cfg.get("AUTH_COOKIE_REFRESH", "pm_refresh"),
        refresh,
        max_age=_seconds(jwt_cfg.get("REFRESH_TOKEN_LIFETIME", timedelta(days=14))),
        httponly=True,
        secure=secure,
        samesite=samesite,
        path="/",
    )


def _clear_auth_cookies(response: Response) -> None:
    jwt_cfg = _jwt_cfg()
    response.delete_cookie(jwt_cfg.get("AUTH_COOKIE", "pm_access"), path="/")
    response.delete_cookie(jwt_cfg.get("AUTH_COOKIE_REFRESH", "pm_refresh"), path="/")


def _auth_event(request, *, action: str, user_id=None, outcome=AuditOutcome.SUCCESS, reason: str = "",
                metadata=None) -> None:
    ctx = AccessContext.anonymous(
        user_id=user_id,
        request_id=getattr(request, "request_id", None),
        ip_address=getattr(request, "client_ip", None),
    )
    audit(
        ctx,
        EventSpec(
            action=action,
            category=AuditCategory.AUTHENTICATION,
            target_type="User",
            target_id=user_id,
            outcome=outcome,
            outcome_reason=reason,
            metadata=metadata or {},
        ),
    )


class LoginView(APIView):
    permission_classes = [AllowAny]

    @extend_schema(
        request=LoginRequestSerializer,
        responses={200: DetailResponseSerializer},
        tags=["IAM"],
    )
    def post(self, request):
        serializer = TokenObtainPairSerializer(data=request.data)
        try:
            serializer.is_valid(raise_exception=True)
        except (AuthenticationFailed, ValidationError):
            _auth_event(
                request,
                action=AuditAction.AUTH_LOGIN_FAILED,
                outcome=AuditOutcome.FAILURE,
                reason="invalid_credentials",
                metadata={"username": str(request.data.get("username", ""))[:150]},
            )
            raise

        _auth_event(request, action=AuditAction.AUTH_LOGIN, user_id=serializer.user.id)

        res = Response({"detail": "login ok"}, status=status.HTTP_200_OK)
        _set_auth_cookies(
            res,
            access=serializer.validated_data["access"],
            refresh=serializer.validated_data["refresh"],
        )
        return res


class RefreshView(APIView):
    permission_classes = [AllowAny]

    @extend_schema(
        request=None,
        responses={200: DetailResponseSerializer},
        tags=["IAM"],
    )
    def post(self, request):
        refresh_cookie_name = _jwt_cfg().get("AUTH_COOKIE_REFRESH", "pm_refresh")
        refresh = request.COOKIES.get(refresh_cookie_name) or request.data.get("refresh")

        serializer = TokenRefreshSerializer(data={"refresh": refresh})
        try:
            serializer.is_valid(raise_exception=True)
        except TokenError as e:
            raise InvalidToken(e.args[0])

        access = serializer.validated_data["access"]
        new_refresh = serializer.validated_data.get("refresh", refresh)

        res = Response({"detail": "refreshed"}, status=status.HTTP_200_OK)
        _set_auth_cookies(res, access=access, refresh=new_refresh)
        return res


class LogoutView(APIView):
    permission_classes = [IsAuthenticated]

    @extend_schema(
        request=None,
        responses={200: DetailResponseSerializer},
        tags=["IAM"],
    )
    def post(self, request):
        _auth_event(request, action=AuditAction.AUTH_LOGOUT, user_id=request.user.id)

        res = Response({"detail": "logged out"}, status=status.HTTP_200_OK)
        _clear_auth_cookies(res)
        return res
