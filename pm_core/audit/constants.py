# pm_core/audit/constants.py


class AuditAction:
    # Authentication
    AUTH_LOGIN = "auth.login"
    AUTH_LOGIN_FAILED = "auth.login_failed"
    AUTH_LOGOUT = "auth.logout"

    # Authorization / scoping
    ACCESS_DENIED = "access.denied"
    SCOPE_VIOLATION = "scope.violation"
    SCOPE_CROSS_TENANT = "scope.cross_tenant_access"
    SCOPE_TENANT_OVERRIDE = "scope.tenant_override"

    # Audit trail itself
    AUDIT_LOG_VIEWED = "audit.log.viewed"
    AUDIT_CORRECTION = "audit.correction"

    # Role management
    ROLE_CREATED = "role.created"
    ROLE_PERMISSIONS_CHANGED = "role.permissions_changed"
    ROLE_DELETED = "role.deleted"
    ROLE_GRANTED = "role.granted"
    ROLE_REVOKED = "role.revoked"
    ROLE_EXPIRED = "role.expired"

    # Reference consumer
    PATIENT_LISTED = "patient.listed"
    PATIENT_VIEWED = "patient.viewed"
    PATIENT_CREATED = "patient.created"
    PATIENT_UPDATED = "patient.updated"
    PATIENT_DELETED = "patient.deleted"

    # Retention
    RETENTION_POLICY_CREATED = "retention.policy.created"
    RETENTION_POLICY_UPDATED = "retention.policy.updated"
    RETENTION_ARCHIVED = "retention.archived"
    RETENTION_ARCHIVE_UPCOMING = "retention.archive.upcoming"
    RETENTION_DESTRUCTION_PROPOSED = "retention.destruction.proposed"
    RETENTION_ACTION_APPROVED = "retention.action.approved"
    RETENTION_ACTION_CANCELLED = "retention.action.cancelled"
    RETENTION_DESTRUCTION_DEFERRED = "retention.destruction.deferred"
    RETENTION_DESTRUCTION_EXECUTED = "retention.destruction.executed"
    RETENTION_RUN = "retention.run"

    LEGAL_HOLD_CREATED = "legal_hold.created"
    LEGAL_HOLD_RELEASED = "legal_hold.released"
    LEGAL_HOLD_EXPIRED = "legal_hold.expired"


# Protected personal data categories carried on entries that touch them.
class ProtectedDataCategory:
    IDENTITY = "identity"
    CONTACT = "contact"
    HEALTH = "health"
