# pm_core/audit/signals.py
from django.dispatch import Signal

# Fired when an audit entry could not be persisted after every retry.
# kwargs: payload (dict), error (Exception)
audit_write_failed = Signal()
