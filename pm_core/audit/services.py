# pm_core/audit/services.py
from __future__ import annotations

from typing import Any, Optional

from pm_core.audit.constants import AuditAction
from pm_core.audit.models import AuditCategory, AuditEntry
from pm_core.audit.recorder import EventSpec, audit


class AuditService:
    """
    Operations on the trail itself. Entries are never changed; a correction
    is a new entry that points at the original.
    """

    @staticmethod
    def append_correction(
        *,
        context,
        original: AuditEntry,
        reason: str,
        corrected: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return audit(
            context,
            EventSpec(
                action=AuditAction.AUDIT_CORRECTION,
                category=original.category,
                target_type=original.target_type,
                target_id=original.target_id or None,
                before=original.after,
                after=corrected,
                involves_protected_data=original.involves_protected_data,
                protected_data_categories=tuple(original.protected_data_categories or ()),
                outcome_reason=reason,
                metadata={"corrected_action": original.action},
                corrects_event_id=original.event_id,
                tenant_id=original.tenant_id,
            ),
        )

    @staticmethod
    def record_view(context, *, view: str, filters: dict[str, Any], returned: int) -> None:
        """One entry per trail query; the entry itself is not part of the result."""
        audit(
            context,
            EventSpec(
                action=AuditAction.AUDIT_LOG_VIEWED,
                category=AuditCategory.DATA_ACCESS,
                target_type="AuditEntry",
                metadata={"view": view, "filters": filters, "returned": returned},
            ),
        )
