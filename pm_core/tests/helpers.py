# pm_core/tests/helpers.py
from pm_core.audit.models import AuditEntry


def scoped(tenant):
    return {"HTTP_X_TENANT_ID": str(tenant.id)}


def entries(action=None, **filters):
    qs = AuditEntry.objects.all()
    if action:
        qs = qs.filter(action=action)
    return list(qs.filter(**filters).order_by("sequence"))
