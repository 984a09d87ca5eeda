# config/settings/test.py
from .base import *  # noqa

DEBUG = False

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

# Inline audit writes so entries share the test transaction.
PM_CORE = {
    **PM_CORE,
    "AUDIT_DISPATCH_MODE": "sync",
    "AUDIT_MAX_RETRIES": 2,
    "AUDIT_BACKOFF_SECONDS": 0.0,
    "AUDIT_SPOOL_PATH": None,
}
