# pm_core/audit/recorder.py
"""
Audit recording entry point.

    audit(context, EventSpec(action=..., category=...))

The entry (event id, server timestamp, actor, tenant, severity, request
metadata) is built synchronously from the AccessContext; persistence is
handed to the AuditDispatcher.
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone

from pm_core.audit.constants import AuditAction
from pm_core.audit.dispatch import AuditDispatcher, AuditSpool
from pm_core.audit.models import ActorType, AuditCategory, AuditOutcome, AuditSeverity
from pm_core.common.conf import core_setting

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventSpec:
    action: str
    category: str
    target_type: str = ""
    target_id: Any = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    involves_protected_data: bool = False
    protected_data_categories: tuple = ()
    outcome: str = AuditOutcome.SUCCESS
    outcome_reason: str = ""
    severity: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    corrects_event_id: Optional[UUID] = None
    # Only honoured when the actor may act on that tenant (system jobs, cross-tenant paths).
    tenant_id: Optional[UUID] = None
    is_permanent: bool = False


_WARNING_ACTIONS = {
    AuditAction.ACCESS_DENIED,
    AuditAction.SCOPE_CROSS_TENANT,
    AuditAction.AUTH_LOGIN_FAILED,
}

_CRITICAL_ACTIONS = {
    AuditAction.SCOPE_VIOLATION,
    AuditAction.SCOPE_TENANT_OVERRIDE,
}


def classify_severity(spec: EventSpec) -> str:
    """
    INFO for ordinary operations, WARNING for denied attempts and authorised
    cross-tenant access, CRITICAL for scope violations and bypass attempts.
    An explicit severity on the spec wins.
    """
    if spec.severity:
        return spec.severity
    if spec.action in _CRITICAL_ACTIONS:
        return AuditSeverity.CRITICAL
    if spec.category == AuditCategory.SECURITY and spec.outcome == AuditOutcome.FAILURE:
        return AuditSeverity.CRITICAL
    if spec.action in _WARNING_ACTIONS:
        return AuditSeverity.WARNING
    if spec.outcome == AuditOutcome.FAILURE and spec.category in (
        AuditCategory.AUTHENTICATION,
        AuditCategory.AUTHORIZATION,
    ):
        return AuditSeverity.WARNING
    return AuditSeverity.INFO


class MonotonicClock:
    """Wall clock that never returns the same or an earlier instant twice."""

    def __init__(self, source=timezone.now):
        self._source = source
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = self._source()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


def _jsonable(value):
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


def _actor_type(context) -> str:
    if getattr(context, "is_system", False):
        return ActorType.SYSTEM
    if getattr(context, "user_id", None) is None:
        return ActorType.ANONYMOUS
    return ActorType.USER


def _entry_tenant(context, spec: EventSpec):
    if spec.tenant_id is None:
        return getattr(context, "active_tenant_id", None)
    if context.can_act_on(spec.tenant_id):
        return spec.tenant_id
    logger.warning(
        "audit %s: tenant override %s outside actor scope; using active tenant",
        spec.action,
        spec.tenant_id,
    )
    return getattr(context, "active_tenant_id", None)


def build_entry(context, spec: EventSpec, *, clock: MonotonicClock) -> dict[str, Any]:
    metadata = dict(spec.metadata or {})
    if context.role_codes:
        metadata.setdefault("role_codes", sorted(context.role_codes))

    return {
        "event_id": uuid.uuid4(),
        "occurred_at": clock.now(),
        "actor_type": _actor_type(context),
        "actor_user_id": getattr(context, "user_id", None),
        "action": spec.action,
        "category": spec.category,
        "severity": classify_severity(spec),
        "target_type": spec.target_type or "",
        "target_id": "" if spec.target_id is None else str(spec.target_id),
        "tenant_id": _entry_tenant(context, spec),
        "involves_protected_data": bool(spec.involves_protected_data),
        "protected_data_categories": sorted(set(spec.protected_data_categories or ())),
        "outcome": spec.outcome,
        "outcome_reason": (spec.outcome_reason or "")[:255],
        "before": _jsonable(spec.before),
        "after": _jsonable(spec.after),
        "metadata": _jsonable(metadata),
        "ip_address": getattr(context, "ip_address", None),
        "request_id": (getattr(context, "request_id", None) or "")[:64],
        "corrects_event_id": spec.corrects_event_id,
        "is_permanent": bool(spec.is_permanent),
    }


class AuditRecorder:
    def __init__(self, dispatcher: AuditDispatcher, *, clock: Optional[MonotonicClock] = None):
        self.dispatcher = dispatcher
        self.clock = clock or MonotonicClock()

    def record(self, context, spec: EventSpec, *, durable: bool = False) -> dict[str, Any]:
        """
        Build and hand off one entry; returns the built entry.

        durable=True writes inline in the caller's transaction and raises
        AuditWriteFailure if it cannot be persisted (destruction certificates).
        Otherwise persistence failures never reach the caller.
        """
        entry = build_entry(context, spec, clock=self.clock)
        if durable:
            self.dispatcher.write_now(entry)
        else:
            self.dispatcher.submit(entry)
        return entry


_recorder: Optional[AuditRecorder] = None
_recorder_lock = threading.Lock()


def build_dispatcher_from_settings() -> AuditDispatcher:
    spool_path = core_setting("AUDIT_SPOOL_PATH")
    return AuditDispatcher(
        mode=core_setting("AUDIT_DISPATCH_MODE"),
        queue_size=core_setting("AUDIT_QUEUE_SIZE"),
        max_retries=core_setting("AUDIT_MAX_RETRIES"),
        backoff_seconds=core_setting("AUDIT_BACKOFF_SECONDS"),
        spool=AuditSpool(spool_path) if spool_path else None,
    )


def get_recorder() -> AuditRecorder:
    global _recorder
    if _recorder is None:
        with _recorder_lock:
            if _recorder is None:
                _recorder = AuditRecorder(build_dispatcher_from_settings())
    return _recorder


def set_recorder(recorder: Optional[AuditRecorder]) -> None:
    global _recorder
    with _recorder_lock:
        previous, _recorder = _recorder, recorder
    if previous is not None and previous is not recorder:
        previous.dispatcher.shutdown()


def reset_recorder() -> None:
    """Drop the process recorder (settings are re-read on next use)."""
    set_recorder(None)


def audit(context, spec: EventSpec, *, durable: bool = False) -> dict[str, Any]:
    return get_recorder().record(context, spec, durable=durable)


record = audit
