"""
Quota migration - backfill and reconcile the usage ledger against ground truth.

migrate_existing_tenants (backfill):
    For every tenant without a subscription, count real subjects and students
    and create a free-tier subscription seeded with those counts. Tenants that
    already have one are skipped. Safe to re-run.

validate_migration (read-only):
    Reports tenants without a subscription and subscriptions whose counters
    differ from ground truth. Drift is reported, never repaired.

Both process tenants independently with bounded concurrency. One tenant's
failure is recorded in errors[] and never aborts the batch.
"""
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging

from models import (
    DriftEntry,
    MigrationError,
    MigrationResult,
    PlanTier,
    SubscriptionEventType,
    UsageCounts,
    ValidationReport,
)
from quota_settings import get_migration_concurrency
from services.document_store import DocumentStore, get_document_store
from services.quota_errors import DuplicateSubscription, MigrationItemFailed
from services.subscription_lifecycle import SubscriptionLifecycleService
from services.tenant_scope import TenantScope, get_tenant_scope
from services.usage_ledger import SUBSCRIPTIONS_COLLECTION, read_counters

logger = logging.getLogger(__name__)

MIGRATION_ACTOR = "quota_migration"

_CREATED = "created"
_SKIPPED = "skipped"
_FAILED = "failed"


async def _run_bounded(items: List[Dict[str, Any]], worker, concurrency: int) -> List[Any]:
    """Run worker over items with at most `concurrency` in flight; results keep item order."""
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _guarded(item):
        async with semaphore:
            return await worker(item)

    return await asyncio.gather(*(_guarded(item) for item in items))


# =============================================================================
# BACKFILL
# =============================================================================

async def _backfill_tenant(
    store: DocumentStore,
    scope: TenantScope,
    lifecycle: SubscriptionLifecycleService,
    tenant: Dict[str, Any],
) -> Tuple[str, Optional[MigrationItemFailed]]:
    ref = scope.tenant_ref(tenant)
    try:
        existing = await store.get(SUBSCRIPTIONS_COLLECTION, ref.id)
        if existing:
            logger.info(f"Subscription already exists for tenant {ref.id}, skipping")
            return _SKIPPED, None

        usage = await scope.ground_truth(store, tenant)
        await lifecycle.create_subscription(
            ref.id,
            tenant_name=ref.name,
            tier=PlanTier.FREE,
            usage=usage,
            actor_id=MIGRATION_ACTOR,
            event_type=SubscriptionEventType.MIGRATION_BACKFILL,
        )
        logger.info(
            f"Created subscription for tenant {ref.id} ({ref.name}): "
            f"subjects={usage.subjects} students={usage.students}"
        )
        return _CREATED, None
    except DuplicateSubscription:
        # Created concurrently between the existence check and the insert
        logger.info(f"Subscription for tenant {ref.id} created concurrently, skipping")
        return _SKIPPED, None
    except Exception as e:
        logger.error(f"Backfill failed for tenant {ref.id} ({ref.name}): {e}")
        return _FAILED, MigrationItemFailed(ref.id, ref.name, e)


async def migrate_existing_tenants(
    store: Optional[DocumentStore] = None,
    scope: Optional[TenantScope] = None,
    concurrency: Optional[int] = None,
) -> MigrationResult:
    """Create free-tier subscriptions, seeded from ground truth, for tenants lacking one."""
    store = store or get_document_store()
    scope = scope or get_tenant_scope()
    lifecycle = SubscriptionLifecycleService(store=store)

    tenants = await scope.list_tenants(store)
    result = MigrationResult(total=len(tenants))
    logger.info(f"Starting quota backfill: {result.total} {scope.name} tenants")

    if not tenants:
        logger.info("No tenants found; nothing to migrate")
        return result

    outcomes = await _run_bounded(
        tenants,
        lambda tenant: _backfill_tenant(store, scope, lifecycle, tenant),
        concurrency or get_migration_concurrency(),
    )

    for outcome, failure in outcomes:
        if outcome == _CREATED:
            result.created += 1
        elif outcome == _SKIPPED:
            result.skipped += 1
        else:
            result.failed += 1
            result.errors.append(
                MigrationError(tenant_id=failure.tenant_id, tenant_name=failure.tenant_name, error=failure.message)
            )

    logger.info(
        f"Quota backfill complete: total={result.total} created={result.created} "
        f"skipped={result.skipped} failed={result.failed}"
    )
    for error in result.errors:
        logger.error(f"  - {error.tenant_name} ({error.tenant_id}): {error.error}")
    return result


# =============================================================================
# VALIDATION
# =============================================================================

async def _validate_tenant(store: DocumentStore, scope: TenantScope, tenant: Dict[str, Any]) -> Dict[str, Any]:
    ref = scope.tenant_ref(tenant)
    try:
        subscription = await store.get(SUBSCRIPTIONS_COLLECTION, ref.id)
        if not subscription:
            return {"missing": ref}

        expected = await scope.ground_truth(store, tenant)
        actual = UsageCounts(**read_counters(subscription))
        if expected != actual:
            return {
                "drift": DriftEntry(tenant_id=ref.id, tenant_name=ref.name, expected=expected, actual=actual)
            }
        return {}
    except Exception as e:
        logger.error(f"Validation failed for tenant {ref.id} ({ref.name}): {e}")
        return {"failure": MigrationItemFailed(ref.id, ref.name, e)}


async def validate_migration(
    store: Optional[DocumentStore] = None,
    scope: Optional[TenantScope] = None,
    concurrency: Optional[int] = None,
) -> ValidationReport:
    """Compare every tenant's ledger to ground truth. Writes nothing."""
    store = store or get_document_store()
    scope = scope or get_tenant_scope()

    tenants = await scope.list_tenants(store)
    report = ValidationReport(
        total_tenants=len(tenants),
        total_subscriptions=await store.count_where(SUBSCRIPTIONS_COLLECTION, {}),
    )
    logger.info(
        f"Validating quota migration: tenants={report.total_tenants} "
        f"subscriptions={report.total_subscriptions}"
    )

    outcomes = await _run_bounded(
        tenants,
        lambda tenant: _validate_tenant(store, scope, tenant),
        concurrency or get_migration_concurrency(),
    )

    for outcome in outcomes:
        if "missing" in outcome:
            report.tenants_without_subscriptions.append(outcome["missing"])
        elif "drift" in outcome:
            report.subscriptions_with_incorrect_counts.append(outcome["drift"])
        elif "failure" in outcome:
            failure = outcome["failure"]
            report.errors.append(
                MigrationError(tenant_id=failure.tenant_id, tenant_name=failure.tenant_name, error=failure.message)
            )

    if not report.tenants_without_subscriptions:
        logger.info("All tenants have subscriptions")
    else:
        logger.warning(f"{len(report.tenants_without_subscriptions)} tenants without subscriptions")
        for tenant in report.tenants_without_subscriptions:
            logger.warning(f"  - {tenant.name} ({tenant.id})")

    if not report.subscriptions_with_incorrect_counts:
        logger.info("All usage counts are accurate")
    else:
        logger.warning(f"{len(report.subscriptions_with_incorrect_counts)} subscriptions with incorrect counts")
        for drift in report.subscriptions_with_incorrect_counts:
            logger.warning(
                f"  - {drift.tenant_name} ({drift.tenant_id}): expected "
                f"{drift.expected.subjects}/{drift.expected.students}, actual "
                f"{drift.actual.subjects}/{drift.actual.students}"
            )
    return report


# =============================================================================
# ENTRY POINTS
# =============================================================================

async def run_backfill() -> Dict[str, Any]:
    """Backfill entry point for the scheduler, admin route and CLI."""
    result = await migrate_existing_tenants()
    return result.model_dump()


async def run_validation() -> Dict[str, Any]:
    """Validation entry point for the scheduler, admin route and CLI."""
    report = await validate_migration()
    return report.model_dump()
