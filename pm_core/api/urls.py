# pm_core/api/urls.py
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from pm_core.audit.api.views import AuditEntryViewSet
from pm_core.iam.api.auth import LoginView, LogoutView, RefreshView
from pm_core.iam.api.session import SessionContextView
from pm_core.iam.api.views import RoleAssignmentViewSet, RoleViewSet
from pm_core.patients.api.views import PatientViewSet
from pm_core.retention.api.views import (
    LegalHoldViewSet,
    RetentionActionViewSet,
    RetentionPolicyViewSet,
    RetentionRecordViewSet,
)

router = DefaultRouter()

# Core
router.register(r"iam/roles", RoleViewSet, basename="iam-roles")
router.register(r"iam/assignments", RoleAssignmentViewSet, basename="iam-assignments")
router.register(r"audit/entries", AuditEntryViewSet, basename="audit-entries")
router.register(r"retention/policies", RetentionPolicyViewSet, basename="retention-policies")
router.register(r"retention/actions", RetentionActionViewSet, basename="retention-actions")
router.register(r"retention/holds", LegalHoldViewSet, basename="retention-holds")
router.register(r"retention/records", RetentionRecordViewSet, basename="retention-records")

# Reference consumer
router.register(r"patients", PatientViewSet, basename="patients")

urlpatterns = [
    path("auth/login/", LoginView.as_view(), name="login"),
    path("auth/refresh/", RefreshView.as_view(), name="refresh"),
    path("auth/logout/", LogoutView.as_view(), name="logout"),
    path("session/context/", SessionContextView.as_view(), name="session-context"),

    path("", include(router.urls)),
]
