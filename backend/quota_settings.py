"""
Runtime settings for the quota engine.

All values come from the environment (backend/.env is loaded by database.py).
Read through these helpers rather than os.environ so defaults live in one place.
"""
import os
import logging

logger = logging.getLogger(__name__)

TENANT_SCOPES = ("teacher", "school")
EXPIRY_POLICIES = ("expire", "downgrade")

DEFAULT_MONGO_TIMEOUT_MS = 5000
DEFAULT_MIGRATION_CONCURRENCY = 10


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using default %s", name, raw, default)
        return default
    return value if value > 0 else default


def get_mongo_timeout_ms() -> int:
    """Upper bound for a single store call (server selection and socket)."""
    return _int_env("MONGO_TIMEOUT_MS", DEFAULT_MONGO_TIMEOUT_MS)


def get_migration_concurrency() -> int:
    return _int_env("QUOTA_MIGRATION_CONCURRENCY", DEFAULT_MIGRATION_CONCURRENCY)


def get_tenant_scope() -> str:
    """
    Which entity owns a quota: an individual teacher or a whole school.
    Unknown values fall back to "teacher".
    """
    scope = (os.getenv("QUOTA_TENANT_SCOPE") or "teacher").strip().lower()
    if scope not in TENANT_SCOPES:
        logger.warning("Unknown QUOTA_TENANT_SCOPE %r; using 'teacher'", scope)
        return "teacher"
    return scope


def get_expiry_policy() -> str:
    """
    What the grace-period sweep does once a grace period has elapsed.
    "expire" flips status only; "downgrade" also moves the tenant to the free tier.
    """
    policy = (os.getenv("QUOTA_EXPIRY_POLICY") or "expire").strip().lower()
    if policy not in EXPIRY_POLICIES:
        logger.warning("Unknown QUOTA_EXPIRY_POLICY %r; using 'expire'", policy)
        return "expire"
    return policy


def get_admin_api_key() -> str:
    return (os.getenv("ADMIN_API_KEY") or "").strip()
