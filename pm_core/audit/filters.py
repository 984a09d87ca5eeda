# pm_core/audit/filters.py
from __future__ import annotations

import django_filters

from pm_core.audit.models import AuditCategory, AuditEntry, AuditOutcome, AuditSeverity


class AuditEntryFilter(django_filters.FilterSet):
    actor_user_id = django_filters.NumberFilter(field_name="actor_user_id")
    action = django_filters.CharFilter(field_name="action")
    action_prefix = django_filters.CharFilter(field_name="action", lookup_expr="startswith")
    category = django_filters.ChoiceFilter(field_name="category", choices=AuditCategory.choices)
    severity = django_filters.ChoiceFilter(field_name="severity", choices=AuditSeverity.choices)
    outcome = django_filters.ChoiceFilter(field_name="outcome", choices=AuditOutcome.choices)
    target_type = django_filters.CharFilter(field_name="target_type")
    target_id = django_filters.CharFilter(field_name="target_id")
    involves_protected_data = django_filters.BooleanFilter(field_name="involves_protected_data")
    occurred_after = django_filters.IsoDateTimeFilter(field_name="occurred_at", lookup_expr="gte")
    occurred_before = django_filters.IsoDateTimeFilter(field_name="occurred_at", lookup_expr="lt")
    # Narrows within the caller's scope; never widens it.
    tenant_id = django_filters.UUIDFilter(field_name="tenant_id")

    class Meta:
        model = AuditEntry
        fields = []
