"""Quota engine error taxonomy.

Single-tenant operations raise these straight to the caller. Batch jobs
(backfill, validation, sweeps) catch them per tenant and report them instead.
"""
from typing import Any, Dict, Optional


class QuotaError(Exception):
    """Base class for every quota engine failure."""

    error_code = "QUOTA_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message}


class UnknownPlanTier(QuotaError):
    error_code = "UNKNOWN_PLAN_TIER"

    def __init__(self, tier: Any):
        self.tier = tier
        super().__init__(f"Unknown plan tier: {tier!r}")


class SubscriptionNotFound(QuotaError):
    """The tenant has no subscription; callers can offer to initialize the free plan."""

    error_code = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"No subscription found for tenant {tenant_id}")


class LimitExceeded(QuotaError):
    """A registration would take the tenant past its plan limit. Not a system fault."""

    error_code = "LIMIT_EXCEEDED"

    def __init__(
        self,
        tenant_id: str,
        resource_kind: str,
        current: int,
        limit: int,
        plan_tier: Optional[str] = None,
        upgrade_to: Optional[str] = None,
    ):
        self.tenant_id = tenant_id
        self.resource_kind = resource_kind
        self.current = current
        self.limit = limit
        self.plan_tier = plan_tier
        self.upgrade_to = upgrade_to
        super().__init__(
            f"You've reached the maximum of {limit} {resource_kind}s for the "
            f"{plan_tier or 'current'} plan ({current}/{limit})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "tenant_id": self.tenant_id,
            "resource_kind": self.resource_kind,
            "current": self.current,
            "limit": self.limit,
            "plan_tier": self.plan_tier,
            "upgrade_required": True,
            "upgrade_to": self.upgrade_to,
        }


class StoreUnavailable(QuotaError):
    """Any underlying store call failed (network, timeout, permission)."""

    error_code = "STORE_UNAVAILABLE"

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Document store unavailable during {operation}{detail}")


class DuplicateSubscription(QuotaError):
    """Raised when creating a subscription for a tenant that already has one."""

    error_code = "DUPLICATE_SUBSCRIPTION"

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Subscription already exists for tenant {tenant_id}")


class MigrationItemFailed(QuotaError):
    """One tenant's backfill/validation step failed. Recorded, never aborts the batch."""

    error_code = "MIGRATION_ITEM_FAILED"

    def __init__(self, tenant_id: str, tenant_name: str, cause: BaseException):
        self.tenant_id = tenant_id
        self.tenant_name = tenant_name
        self.cause = cause
        super().__init__(str(cause))


class InvalidTransition(QuotaError):
    error_code = "INVALID_TRANSITION"

    def __init__(self, tenant_id: str, from_status: str, to_status: str):
        self.tenant_id = tenant_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Subscription for tenant {tenant_id} cannot move from {from_status} to {to_status}"
        )


class UnsupportedCurrency(QuotaError):
    """Plans are only priced in the currencies listed on Currency."""

    error_code = "UNSUPPORTED_CURRENCY"

    def __init__(self, currency: Any):
        self.currency = currency
        super().__init__(f"Unsupported currency: {currency!r}")
