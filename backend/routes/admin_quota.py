"""Admin Quota Management Routes.

Operator surface for the subscription usage-quota engine.

Endpoints:
- GET  /api/admin/quota/plans - Plan comparison matrix
- POST /api/admin/quota/migration/backfill - Create missing subscriptions from ground truth
- GET  /api/admin/quota/migration/validation - Report missing subscriptions and ledger drift
- POST /api/admin/quota/migration/test-run - Run the synthetic-data migration test
- GET  /api/admin/quota/tenants/{tenant_id}/usage - Usage summary for one tenant
- GET  /api/admin/quota/tenants/{tenant_id}/events - Lifecycle events for one tenant
- POST /api/admin/quota/tenants/{tenant_id}/downgrade - Move a tenant to the free tier
- POST /api/admin/quota/tenants/{tenant_id}/plan - Change a tenant's tier
- POST /api/admin/quota/lifecycle/sweep - Run renewals and the grace-period sweep now
- GET  /api/admin/quota/metrics - Active subscriptions per tier and lifecycle event counts
- GET  /api/admin/quota/metrics/trends - Daily upgrades, downgrades, renewals and cancellations

RULES:
1. Validation is read-only. Drift is reported here, never repaired.
2. Counters cannot be edited through this surface; only the limit gate moves them.
3. Every plan change is written to the subscription event log by the lifecycle.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, HTTPException, Query, status, Depends
from pydantic import BaseModel

from middleware import admin_route_guard
from models import Currency
from job_runner import (
    run_lifecycle_sweep,
    run_quota_backfill,
    run_quota_migration_test,
    run_quota_validation,
)
from services.plan_registry import plan_registry
from services.quota_errors import (
    InvalidTransition,
    LimitExceeded,
    QuotaError,
    StoreUnavailable,
    SubscriptionNotFound,
    UnknownPlanTier,
    UnsupportedCurrency,
)
from services.subscription_lifecycle import subscription_lifecycle
from services.subscription_metrics import subscription_metrics
from services.usage_ledger import usage_ledger
from utils.audit import get_subscription_events

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/quota", tags=["admin-quota"], dependencies=[Depends(admin_route_guard)])

_STATUS_BY_ERROR = (
    (LimitExceeded, status.HTTP_403_FORBIDDEN),
    (SubscriptionNotFound, status.HTTP_404_NOT_FOUND),
    (UnknownPlanTier, status.HTTP_400_BAD_REQUEST),
    (UnsupportedCurrency, status.HTTP_400_BAD_REQUEST),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (StoreUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def quota_http_error(error: QuotaError) -> HTTPException:
    """Map a quota engine error onto an HTTPException with a structured detail."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.to_dict())


# =============================================================================
# Request Models
# =============================================================================

class DowngradeRequest(BaseModel):
    reason: str = "admin_downgrade"


class PlanChangeRequest(BaseModel):
    """Request to move a tenant onto another tier."""
    tier: str
    amount: Optional[int] = None  # minor units; defaults to the plan price
    currency: Optional[Currency] = None
    payment_provider: Optional[str] = None
    processor_customer_ref: Optional[str] = None
    processor_subscription_ref: Optional[str] = None


# =============================================================================
# Plans
# =============================================================================

@router.get("/plans")
async def get_plans():
    return {"plans": plan_registry.get_plan_matrix()}


# =============================================================================
# Migration
# =============================================================================

@router.post("/migration/backfill")
async def run_backfill_now():
    """Backfill subscriptions for tenants that lack one. Safe to re-run."""
    try:
        return await run_quota_backfill()
    except QuotaError as e:
        raise quota_http_error(e)


@router.get("/migration/validation")
async def get_migration_validation():
    """Compare every tenant's ledger to ground truth."""
    try:
        return await run_quota_validation()
    except QuotaError as e:
        raise quota_http_error(e)


@router.post("/migration/test-run")
async def run_migration_test_now():
    """Seed synthetic data, migrate, validate, verify and clean up."""
    try:
        return await run_quota_migration_test()
    except QuotaError as e:
        raise quota_http_error(e)


# =============================================================================
# Tenants
# =============================================================================

@router.get("/tenants/{tenant_id}/usage")
async def get_tenant_usage(tenant_id: str):
    try:
        summary = await usage_ledger.get_usage_summary(tenant_id)
    except QuotaError as e:
        raise quota_http_error(e)
    return summary.model_dump(mode="json")


@router.get("/tenants/{tenant_id}/events")
async def get_tenant_events(tenant_id: str, limit: int = 50):
    try:
        events = await get_subscription_events(usage_ledger.store, tenant_id, limit=limit)
    except QuotaError as e:
        raise quota_http_error(e)
    for event in events:
        event.pop("_id", None)
    return {"tenant_id": tenant_id, "events": events, "total": len(events)}


@router.post("/tenants/{tenant_id}/downgrade")
async def downgrade_tenant(tenant_id: str, body: DowngradeRequest, admin: dict = Depends(admin_route_guard)):
    try:
        result = await subscription_lifecycle.downgrade_to_free(
            tenant_id, reason=body.reason, actor_id=admin.get("actor_id"),
        )
    except QuotaError as e:
        raise quota_http_error(e)

    logger.info(f"Admin downgraded tenant {tenant_id} to free: {body.reason}")
    return {
        "tenant_id": tenant_id,
        "plan_tier": result["plan_tier"],
        "exceeds_limits": result["exceeds_limits"],
    }


@router.post("/tenants/{tenant_id}/plan")
async def change_tenant_plan(tenant_id: str, body: PlanChangeRequest, admin: dict = Depends(admin_route_guard)):
    payment = body.model_dump(mode="json", exclude={"tier"}, exclude_none=True)
    try:
        subscription = await subscription_lifecycle.change_plan(
            tenant_id, body.tier, payment=payment or None, actor_id=admin.get("actor_id"),
        )
    except QuotaError as e:
        raise quota_http_error(e)

    logger.info(f"Admin changed plan for tenant {tenant_id} to {subscription.get('plan_tier')}")
    return {
        "tenant_id": tenant_id,
        "plan_tier": subscription.get("plan_tier"),
        "status": subscription.get("status"),
        "subject_limit": subscription.get("subject_limit"),
        "student_limit": subscription.get("student_limit"),
        "question_limit": subscription.get("question_limit"),
        "expiry_date": subscription.get("expiry_date"),
    }


# =============================================================================
# Lifecycle
# =============================================================================

@router.post("/lifecycle/sweep")
async def run_lifecycle_sweep_now():
    """Run due renewals, then expire elapsed grace periods."""
    try:
        return await run_lifecycle_sweep()
    except QuotaError as e:
        raise quota_http_error(e)


# =============================================================================
# Metrics
# =============================================================================

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@router.get("/metrics")
async def get_subscription_metrics(
    start: Optional[datetime] = Query(None, description="Only count events at or after this time"),
    end: Optional[datetime] = Query(None, description="Only count events at or before this time"),
):
    """Active subscriptions per tier and lifecycle event counts for the range."""
    try:
        return await subscription_metrics.get_subscription_metrics(_as_utc(start), _as_utc(end))
    except QuotaError as e:
        raise quota_http_error(e)


@router.get("/metrics/trends")
async def get_subscription_trends(days: int = Query(30, ge=1, le=365)):
    try:
        trends = await subscription_metrics.get_subscription_trends(days=days)
    except QuotaError as e:
        raise quota_http_error(e)
    return {"days": days, "trends": trends}
