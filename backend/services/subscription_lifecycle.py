"""Subscription Lifecycle - state machine for a tenant's subscription.

States:
    active -> grace_period -> expired
    active / grace_period -> cancelled
    active / grace_period / expired -> active on a new tier via change_plan
        (free goes through downgrade_to_free); cancelled is terminal

RULES:
1. One subscription per tenant, created once (registration or backfill), never deleted.
2. Limits are copied from plan_registry whenever the tier changes.
3. Usage counters are never touched here. A downgrade keeps them as they are
   (data retention); the limit gate then blocks new registrations only.
4. Renewal success moves expiry_date forward exactly one calendar month.
   Any renewal failure opens a grace period of exactly GRACE_PERIOD_DAYS.
5. Status transitions use compare-and-set on the current status so two
   sweeps running at once cannot both apply the same transition.
6. Every transition is written to the subscription event log.
7. Renewal, grace-period and downgrade transitions queue a tenant email.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
import calendar
import logging

from models import (
    Currency,
    PlanTier,
    Subscription,
    SubscriptionEventType,
    SubscriptionStatus,
    UsageCounts,
    utc_now,
)
from quota_settings import get_expiry_policy
from services.document_store import DocumentStore, DuplicateDocument, get_document_store
from services.payment_gateway import RenewalGateway, get_renewal_gateway
from services.plan_registry import TIER_ORDER, plan_registry
from services.quota_errors import DuplicateSubscription, InvalidTransition, SubscriptionNotFound
from services.subscription_notifications import SubscriptionNotifier
from services.usage_ledger import (
    SUBSCRIPTIONS_COLLECTION,
    initial_counters,
    read_counters,
    strip_counter_fields,
)
from utils.audit import log_subscription_event

logger = logging.getLogger(__name__)

GRACE_PERIOD_DAYS = 3
EXPIRING_SOON_DAYS = 7

# Fields cleared when a tenant falls back to the free tier
_PAYMENT_FIELDS_CLEARED = {
    "amount": 0,
    "expiry_date": None,
    "grace_period_end": None,
    "last_payment_date": None,
    "payment_provider": None,
    "processor_customer_ref": None,
    "processor_subscription_ref": None,
}

_PLAN_CHANGE_FROM = [
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.GRACE_PERIOD.value,
    SubscriptionStatus.EXPIRED.value,
]
_CANCELLABLE_FROM = [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.GRACE_PERIOD.value]

# Recorded before/after on plan change events
_PLAN_SNAPSHOT_FIELDS = (
    "plan_tier",
    "status",
    "subject_limit",
    "student_limit",
    "question_limit",
    "amount",
    "currency",
    "expiry_date",
)


def _plan_snapshot(subscription: Dict[str, Any]) -> Dict[str, Any]:
    return {key: subscription.get(key) for key in _PLAN_SNAPSHOT_FIELDS}


def add_one_month(value: datetime) -> datetime:
    """Same day next month, clamped to the last day (Jan 31 -> Feb 28/29)."""
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class SubscriptionLifecycleService:
    """Creates subscriptions and moves them through their states."""

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        gateway: Optional[RenewalGateway] = None,
        expiry_policy: Optional[str] = None,
        notifier: Optional[SubscriptionNotifier] = None,
    ):
        self._store = store
        self._gateway = gateway
        self._expiry_policy = expiry_policy
        self._notifier = notifier

    @property
    def store(self) -> DocumentStore:
        return self._store or get_document_store()

    @property
    def gateway(self) -> RenewalGateway:
        return self._gateway or get_renewal_gateway()

    @property
    def expiry_policy(self) -> str:
        return self._expiry_policy or get_expiry_policy()

    @property
    def notifier(self) -> SubscriptionNotifier:
        return self._notifier or SubscriptionNotifier(store=self.store)

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_subscription(
        self,
        tenant_id: str,
        tenant_name: Optional[str] = None,
        tier: Union[str, PlanTier] = PlanTier.FREE,
        usage: Optional[UsageCounts] = None,
        currency: Union[str, Currency] = Currency.NGN,
        actor_id: Optional[str] = None,
        event_type: SubscriptionEventType = SubscriptionEventType.SUBSCRIPTION_CREATED,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Insert a new subscription seeded with the given usage.

        Raises DuplicateSubscription if the tenant already has one. The insert
        itself rejects an existing id, so two racing callers cannot both win.
        """
        now = now or utc_now()
        plan = plan_registry.get_plan(tier)
        currency = plan_registry.resolve_currency(currency)
        usage = usage or UsageCounts()
        paid = plan_registry.is_paid(plan.tier)

        subscription = Subscription(
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            plan_tier=plan.tier,
            status=SubscriptionStatus.ACTIVE,
            start_date=now,
            expiry_date=add_one_month(now) if paid else None,
            amount=plan_registry.get_price(plan.tier, currency) if paid else 0,
            currency=currency,
            created_at=now,
            updated_at=now,
            **plan_registry.limits_for(plan.tier),
        )
        doc = subscription.to_document()
        doc.update(initial_counters(usage.subjects, usage.students))

        try:
            created = await self.store.create(SUBSCRIPTIONS_COLLECTION, tenant_id, doc)
        except DuplicateDocument:
            raise DuplicateSubscription(tenant_id) from None

        logger.info(
            f"Subscription created for tenant {tenant_id}: plan={plan.tier.value} "
            f"subjects={usage.subjects} students={usage.students}"
        )
        await log_subscription_event(
            self.store,
            tenant_id,
            event_type,
            to_plan=plan.tier.value,
            status=SubscriptionStatus.ACTIVE.value,
            actor_id=actor_id,
            metadata={"tenant_name": tenant_name, "usage": usage.model_dump()},
        )
        return created

    async def initialize_subscription(
        self,
        tenant_id: str,
        tenant_name: Optional[str] = None,
        tier: Union[str, PlanTier] = PlanTier.FREE,
        usage: Optional[UsageCounts] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Idempotent create: returns the existing subscription if the tenant has one."""
        try:
            return await self.create_subscription(
                tenant_id, tenant_name=tenant_name, tier=tier, usage=usage, actor_id=actor_id, now=now,
            )
        except DuplicateSubscription:
            logger.info(f"Subscription already exists for tenant {tenant_id}; returning existing")
            return await self.get_subscription(tenant_id)

    async def get_subscription(self, tenant_id: str) -> Dict[str, Any]:
        subscription = await self.store.get(SUBSCRIPTIONS_COLLECTION, tenant_id)
        if not subscription:
            raise SubscriptionNotFound(tenant_id)
        return subscription

    async def update_subscription(
        self,
        tenant_id: str,
        fields: Dict[str, Any],
        condition: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Generic field update. Ledger counters are stripped; only the usage
        ledger may change them. Returns None when condition did not match.
        """
        update = strip_counter_fields(fields)
        update["updated_at"] = update.get("updated_at") or utc_now()
        return await self.store.compare_and_set(SUBSCRIPTIONS_COLLECTION, tenant_id, condition or {}, update)

    # =========================================================================
    # Renewal and grace period
    # =========================================================================

    async def process_renewal(self, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Attempt to renew one paid subscription.

        - No processor reference on file: grace period
        - Gateway declines or errors: grace period
        - Gateway confirms: expiry_date += 1 calendar month, status active
        """
        now = now or utc_now()
        subscription = await self.get_subscription(tenant_id)
        status = subscription.get("status")
        if status not in _CANCELLABLE_FROM:
            raise InvalidTransition(tenant_id, status, SubscriptionStatus.ACTIVE.value)

        if not subscription.get("processor_customer_ref") or not subscription.get("processor_subscription_ref"):
            logger.info(f"No stored payment method for tenant {tenant_id}, activating grace period")
            return await self._renewal_failed(tenant_id, "no_payment_method", now)

        try:
            paid = await self.gateway.charge_renewal(subscription)
        except Exception as e:
            logger.error(f"Renewal charge failed for tenant {tenant_id}: {e}")
            return await self._renewal_failed(tenant_id, "gateway_error", now)

        if not paid:
            logger.info(f"Renewal declined for tenant {tenant_id}, activating grace period")
            return await self._renewal_failed(tenant_id, "payment_declined", now)

        previous_expiry = subscription.get("expiry_date")
        new_expiry = add_one_month(previous_expiry or now)
        updated = await self.update_subscription(
            tenant_id,
            {
                "status": SubscriptionStatus.ACTIVE.value,
                "expiry_date": new_expiry,
                "grace_period_end": None,
                "last_payment_date": now,
                "updated_at": now,
            },
            condition={"status": {"$in": _CANCELLABLE_FROM}, "expiry_date": previous_expiry},
        )
        if updated is None:
            logger.warning(f"Renewal for tenant {tenant_id} skipped: subscription changed concurrently")
            return {"tenant_id": tenant_id, "renewed": False, "reason": "concurrent_update"}

        logger.info(f"Subscription renewed for tenant {tenant_id} until {new_expiry.isoformat()}")
        await log_subscription_event(
            self.store,
            tenant_id,
            SubscriptionEventType.SUBSCRIPTION_RENEWAL,
            from_plan=subscription.get("plan_tier"),
            to_plan=subscription.get("plan_tier"),
            status=SubscriptionStatus.ACTIVE.value,
            metadata={
                "previous_expiry": previous_expiry.isoformat() if previous_expiry else None,
                "new_expiry": new_expiry.isoformat(),
                "amount": subscription.get("amount"),
                "currency": subscription.get("currency"),
            },
        )
        await self.notifier.renewal_succeeded(updated, new_expiry)
        return {
            "tenant_id": tenant_id,
            "renewed": True,
            "status": SubscriptionStatus.ACTIVE.value,
            "expiry_date": new_expiry,
        }

    async def _renewal_failed(self, tenant_id: str, reason: str, now: datetime) -> Dict[str, Any]:
        subscription = await self.activate_grace_period(tenant_id, now=now, reason=reason)
        return {
            "tenant_id": tenant_id,
            "renewed": False,
            "reason": reason,
            "status": subscription.get("status"),
            "grace_period_end": subscription.get("grace_period_end"),
        }

    async def activate_grace_period(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """active -> grace_period with grace_period_end = now + 3 days. Idempotent."""
        now = now or utc_now()
        grace_period_end = now + timedelta(days=GRACE_PERIOD_DAYS)
        updated = await self.update_subscription(
            tenant_id,
            {
                "status": SubscriptionStatus.GRACE_PERIOD.value,
                "grace_period_end": grace_period_end,
                "updated_at": now,
            },
            condition={"status": SubscriptionStatus.ACTIVE.value},
        )
        if updated is None:
            current = await self.get_subscription(tenant_id)
            if current.get("status") == SubscriptionStatus.GRACE_PERIOD.value:
                # Keep the original deadline
                return current
            raise InvalidTransition(tenant_id, current.get("status"), SubscriptionStatus.GRACE_PERIOD.value)

        logger.info(f"Grace period activated for tenant {tenant_id} until {grace_period_end.isoformat()}")
        await log_subscription_event(
            self.store,
            tenant_id,
            SubscriptionEventType.GRACE_PERIOD_ACTIVATED,
            from_plan=updated.get("plan_tier"),
            status=SubscriptionStatus.GRACE_PERIOD.value,
            metadata={"reason": reason, "grace_period_end": grace_period_end.isoformat()},
        )
        await self.notifier.grace_period_started(updated, grace_period_end)
        return updated

    async def expire_grace_periods(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Sweep: every grace_period subscription whose grace_period_end <= now
        becomes expired. With the "downgrade" expiry policy the tenant is then
        moved to the free tier as well.
        """
        now = now or utc_now()
        policy = self.expiry_policy
        due = await self.store.find_where(
            SUBSCRIPTIONS_COLLECTION,
            {"status": SubscriptionStatus.GRACE_PERIOD.value, "grace_period_end": {"$lte": now}},
        )

        expired: List[str] = []
        downgraded: List[str] = []
        errors: List[Dict[str, str]] = []

        for subscription in due:
            tenant_id = subscription.get("tenant_id") or subscription.get("_id")
            try:
                updated = await self.update_subscription(
                    tenant_id,
                    {"status": SubscriptionStatus.EXPIRED.value, "updated_at": now},
                    condition={"status": SubscriptionStatus.GRACE_PERIOD.value, "grace_period_end": {"$lte": now}},
                )
                if updated is None:
                    # Renewed or expired by someone else since the query
                    continue

                expired.append(tenant_id)
                logger.info(f"Subscription expired for tenant {tenant_id}")
                await log_subscription_event(
                    self.store,
                    tenant_id,
                    SubscriptionEventType.SUBSCRIPTION_EXPIRED,
                    from_plan=subscription.get("plan_tier"),
                    status=SubscriptionStatus.EXPIRED.value,
                    metadata={"grace_period_end": str(subscription.get("grace_period_end")), "policy": policy},
                )

                if policy == "downgrade":
                    await self.downgrade_to_free(tenant_id, reason="grace_period_elapsed", now=now)
                    downgraded.append(tenant_id)
            except Exception as e:
                logger.error(f"Failed to expire subscription for tenant {tenant_id}: {e}")
                errors.append({"tenant_id": tenant_id, "error": str(e)})

        message = f"Expired {len(expired)} grace periods"
        logger.info(f"{message} (policy={policy}, downgraded={len(downgraded)}, errors={len(errors)})")
        return {
            "message": message,
            "count": len(expired),
            "expired": expired,
            "downgraded": downgraded,
            "errors": errors,
        }

    async def process_due_renewals(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Sweep: renew every active paid subscription whose expiry_date <= now."""
        now = now or utc_now()
        paid_tiers = [tier.value for tier in TIER_ORDER if plan_registry.is_paid(tier)]
        due = await self.store.find_where(
            SUBSCRIPTIONS_COLLECTION,
            {
                "status": SubscriptionStatus.ACTIVE.value,
                "plan_tier": {"$in": paid_tiers},
                "expiry_date": {"$lte": now},
            },
        )

        renewed: List[str] = []
        grace: List[str] = []
        errors: List[Dict[str, str]] = []

        for subscription in due:
            tenant_id = subscription.get("tenant_id") or subscription.get("_id")
            try:
                result = await self.process_renewal(tenant_id, now=now)
                if result.get("renewed"):
                    renewed.append(tenant_id)
                elif result.get("status") == SubscriptionStatus.GRACE_PERIOD.value:
                    grace.append(tenant_id)
            except Exception as e:
                logger.error(f"Renewal processing failed for tenant {tenant_id}: {e}")
                errors.append({"tenant_id": tenant_id, "error": str(e)})

        message = f"Processed {len(due)} due renewals"
        logger.info(f"{message}: renewed={len(renewed)} grace_period={len(grace)} errors={len(errors)}")
        return {
            "message": message,
            "count": len(due),
            "renewed": renewed,
            "grace_period": grace,
            "errors": errors,
        }

    # =========================================================================
    # Plan changes
    # =========================================================================

    async def change_plan(
        self,
        tenant_id: str,
        tier: Union[str, PlanTier],
        payment: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Move a tenant to another tier and copy that tier's limits.

        payment (optional) carries amount, currency, payment_provider,
        processor_customer_ref and processor_subscription_ref from checkout.
        Moving to free goes through downgrade_to_free.
        """
        now = now or utc_now()
        target = plan_registry.resolve_tier(tier)
        current = await self.get_subscription(tenant_id)
        if current.get("status") not in _PLAN_CHANGE_FROM:
            raise InvalidTransition(tenant_id, current.get("status"), SubscriptionStatus.ACTIVE.value)

        if not plan_registry.is_paid(target):
            result = await self.downgrade_to_free(tenant_id, reason="plan_change", actor_id=actor_id, now=now)
            return result["subscription"]

        from_plan = current.get("plan_tier")
        payment = payment or {}
        currency = plan_registry.resolve_currency(
            payment.get("currency") or current.get("currency") or Currency.NGN
        ).value

        fields = {
            "plan_tier": target.value,
            "status": SubscriptionStatus.ACTIVE.value,
            "expiry_date": add_one_month(now),
            "grace_period_end": None,
            "cancelled_at": None,
            "amount": payment.get("amount", plan_registry.get_price(target, currency)),
            "currency": currency,
            "last_payment_date": now,
            "updated_at": now,
            **plan_registry.limits_for(target),
        }
        for key in ("payment_provider", "processor_customer_ref", "processor_subscription_ref"):
            if payment.get(key):
                fields[key] = payment[key]

        updated = await self.update_subscription(
            tenant_id, fields, condition={"status": {"$in": _PLAN_CHANGE_FROM}},
        )
        if updated is None:
            latest = await self.get_subscription(tenant_id)
            raise InvalidTransition(tenant_id, latest.get("status"), SubscriptionStatus.ACTIVE.value)

        event_type = SubscriptionEventType.PLAN_UPGRADE
        if from_plan in (t.value for t in TIER_ORDER) and TIER_ORDER.index(PlanTier(from_plan)) > TIER_ORDER.index(target):
            event_type = SubscriptionEventType.PLAN_DOWNGRADE

        logger.info(f"Plan changed for tenant {tenant_id}: {from_plan} -> {target.value}")
        await log_subscription_event(
            self.store,
            tenant_id,
            event_type,
            from_plan=from_plan,
            to_plan=target.value,
            status=SubscriptionStatus.ACTIVE.value,
            actor_id=actor_id,
            before_state=_plan_snapshot(current),
            after_state=_plan_snapshot(updated),
            metadata={"amount": fields["amount"], "currency": currency},
        )
        return updated

    async def downgrade_to_free(
        self,
        tenant_id: str,
        reason: str = "manual",
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Move a tenant to the free tier: free limits, status active, payment
        fields cleared. Usage counters are kept. The result reports which
        counters now exceed the free limits. Cancelled subscriptions stay
        cancelled (InvalidTransition).
        """
        now = now or utc_now()
        current = await self.get_subscription(tenant_id)
        limits = plan_registry.limits_for(PlanTier.FREE)

        fields = {
            **_PAYMENT_FIELDS_CLEARED,
            **limits,
            "plan_tier": PlanTier.FREE.value,
            "status": SubscriptionStatus.ACTIVE.value,
            "updated_at": now,
        }
        updated = await self.update_subscription(
            tenant_id, fields, condition={"status": {"$in": _PLAN_CHANGE_FROM}},
        )
        if updated is None:
            latest = await self.get_subscription(tenant_id)
            raise InvalidTransition(tenant_id, latest.get("status"), SubscriptionStatus.ACTIVE.value)

        usage = read_counters(updated)
        exceeds_limits = {
            "subjects": usage["subjects"] > limits["subject_limit"],
            "students": usage["students"] > limits["student_limit"],
        }
        if any(exceeds_limits.values()):
            logger.warning(
                f"Tenant {tenant_id} downgraded above free limits: "
                f"subjects={usage['subjects']}/{limits['subject_limit']} "
                f"students={usage['students']}/{limits['student_limit']}"
            )
        logger.info(f"Tenant {tenant_id} downgraded to free ({reason})")

        await log_subscription_event(
            self.store,
            tenant_id,
            SubscriptionEventType.PLAN_DOWNGRADE,
            from_plan=current.get("plan_tier"),
            to_plan=PlanTier.FREE.value,
            status=SubscriptionStatus.ACTIVE.value,
            actor_id=actor_id,
            before_state=_plan_snapshot(current),
            after_state=_plan_snapshot(updated),
            metadata={"reason": reason, "usage": usage, "exceeds_limits": exceeds_limits},
        )
        await self.notifier.downgraded(tenant_id, current.get("plan_tier"), usage, limits, exceeds_limits)
        return {
            "tenant_id": tenant_id,
            "plan_tier": PlanTier.FREE.value,
            "exceeds_limits": exceeds_limits,
            "subscription": updated,
        }

    async def cancel_subscription(
        self,
        tenant_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """active / grace_period -> cancelled. Any other state raises InvalidTransition."""
        now = now or utc_now()
        updated = await self.update_subscription(
            tenant_id,
            {"status": SubscriptionStatus.CANCELLED.value, "cancelled_at": now, "updated_at": now},
            condition={"status": {"$in": _CANCELLABLE_FROM}},
        )
        if updated is None:
            current = await self.get_subscription(tenant_id)
            raise InvalidTransition(tenant_id, current.get("status"), SubscriptionStatus.CANCELLED.value)

        logger.info(f"Subscription cancelled for tenant {tenant_id}")
        await log_subscription_event(
            self.store,
            tenant_id,
            SubscriptionEventType.SUBSCRIPTION_CANCELLED,
            from_plan=updated.get("plan_tier"),
            status=SubscriptionStatus.CANCELLED.value,
            actor_id=actor_id,
            metadata={"reason": reason},
        )
        return updated

    # =========================================================================
    # Queries
    # =========================================================================

    async def find_expiring_soon(
        self,
        now: Optional[datetime] = None,
        days: int = EXPIRING_SOON_DAYS,
    ) -> List[Dict[str, Any]]:
        """Active subscriptions expiring within the next `days` days (renewal reminders)."""
        now = now or utc_now()
        return await self.store.find_where(
            SUBSCRIPTIONS_COLLECTION,
            {
                "status": SubscriptionStatus.ACTIVE.value,
                "expiry_date": {"$gt": now, "$lte": now + timedelta(days=days)},
            },
        )

    async def send_renewal_reminders(
        self,
        now: Optional[datetime] = None,
        days: int = EXPIRING_SOON_DAYS,
    ) -> Dict[str, Any]:
        """Sweep: queue a renewal reminder for every paid subscription expiring soon."""
        now = now or utc_now()
        expiring = await self.find_expiring_soon(now=now, days=days)
        paid_tiers = [tier.value for tier in TIER_ORDER if plan_registry.is_paid(tier)]

        queued: List[str] = []
        skipped: List[Dict[str, str]] = []
        for subscription in expiring:
            tenant_id = subscription.get("tenant_id") or subscription.get("_id")
            if subscription.get("plan_tier") not in paid_tiers:
                continue
            result = await self.notifier.renewal_reminder(subscription, now)
            if result.outcome == "queued":
                queued.append(tenant_id)
            else:
                skipped.append({"tenant_id": tenant_id, "outcome": result.outcome})

        message = f"Queued {len(queued)} renewal reminders"
        logger.info(f"{message}: expiring={len(expiring)} skipped={len(skipped)}")
        return {
            "message": message,
            "count": len(expiring),
            "queued": queued,
            "skipped": skipped,
        }


# Singleton instance
subscription_lifecycle = SubscriptionLifecycleService()
