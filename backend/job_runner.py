"""
Shared job runner for scheduled quota jobs.
Used by server (scheduler), admin routes (manual run) and scripts.
Each run_* returns a dict with "message" (and optionally "count") for the admin UI.
"""
import logging

logger = logging.getLogger(__name__)


async def run_subscription_renewals():
    try:
        from services.subscription_lifecycle import subscription_lifecycle
        result = await subscription_lifecycle.process_due_renewals()
        logger.info(
            f"Subscription renewals job completed: {len(result['renewed'])} renewed, "
            f"{len(result['grace_period'])} moved to grace period"
        )
        return result
    except Exception as e:
        logger.error(f"Subscription renewals job failed: {e}")
        raise


async def run_grace_period_expirations():
    try:
        from services.subscription_lifecycle import subscription_lifecycle
        result = await subscription_lifecycle.expire_grace_periods()
        logger.info(f"Grace period sweep completed: {result['count']} subscriptions expired")
        return result
    except Exception as e:
        logger.error(f"Grace period sweep failed: {e}")
        raise


async def run_expiry_reminders():
    try:
        from services.subscription_lifecycle import subscription_lifecycle
        result = await subscription_lifecycle.send_renewal_reminders()
        logger.info(
            f"Expiry reminder job completed: {result['count']} expiring soon, "
            f"{len(result['queued'])} reminders queued"
        )
        return result
    except Exception as e:
        logger.error(f"Expiry reminder job failed: {e}")
        raise


async def run_lifecycle_sweep():
    """Renewals first, then grace-period expiry; used by the admin sweep endpoint."""
    renewals = await run_subscription_renewals()
    expirations = await run_grace_period_expirations()
    return {
        "message": f"{renewals['message']}; {expirations['message']}",
        "renewals": renewals,
        "expirations": expirations,
    }


async def run_quota_backfill():
    try:
        from services.quota_migration import run_backfill
        result = await run_backfill()
        logger.info(f"Quota backfill job completed: {result['created']} created, {result['failed']} failed")
        return {
            "message": f"Quota backfill: {result['created']} created, {result['skipped']} skipped, {result['failed']} failed",
            "count": result["created"],
            **result,
        }
    except Exception as e:
        logger.error(f"Quota backfill job failed: {e}")
        raise


async def run_quota_validation():
    try:
        from services.quota_migration import run_validation
        report = await run_validation()
        missing = len(report["tenants_without_subscriptions"])
        drift = len(report["subscriptions_with_incorrect_counts"])
        logger.info(f"Quota validation completed: {missing} without subscription, {drift} with drift")
        return {
            "message": f"Quota validation: {missing} tenants without subscription, {drift} with incorrect counts",
            "count": missing + drift,
            **report,
        }
    except Exception as e:
        logger.error(f"Quota validation job failed: {e}")
        raise


async def run_quota_migration_test():
    try:
        from services.migration_test_harness import run_migration_test
        result = await run_migration_test()
        logger.info(f"Quota migration test run completed: success={result['success']}")
        return {
            "message": f"Migration test run {'passed' if result['success'] else 'failed'}",
            **result,
        }
    except Exception as e:
        logger.error(f"Quota migration test run failed: {e}")
        raise
