# pm_core/common/conf.py
from __future__ import annotations

from typing import Any

from django.conf import settings

DEFAULTS: dict[str, Any] = {
    "AUDIT_DISPATCH_MODE": "async",
    "AUDIT_QUEUE_SIZE": 1000,
    "AUDIT_MAX_RETRIES": 5,
    "AUDIT_BACKOFF_SECONDS": 0.5,
    "AUDIT_SPOOL_PATH": None,
    "AUDIT_DENIED_ACCESS": True,
    "RETENTION_HOLD_RECHECK_SECONDS": 86400,
}


def core_setting(name: str) -> Any:
    """
    Read a key from settings.PM_CORE, falling back to DEFAULTS.
    Read on every call so override_settings works in tests.
    """
    overrides = getattr(settings, "PM_CORE", None) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
