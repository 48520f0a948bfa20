"""Usage Ledger & Limit Gate.

The ledger is the pair of counters (current_subjects, current_students) embedded
in each tenant's subscription document. This module is the ONLY place allowed to
change them, and it only ever does so with single atomic store operations:

- increment_usage    $inc +1
- decrement_usage    $inc -1 while the counter is > 0 (never negative)
- try_acquire        $inc +1 only while current < limit (capacity reserved in one step)

check_limit is a plain read. check_limit followed later by increment_usage is
NOT transactional: two concurrent callers can both pass the check when one slot
remains. New call sites should use try_acquire / register_with_quota instead.

Every call takes tenant_id explicitly; there is no ambient tenant.
"""
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union
import logging

from models import PlanTier, ResourceKind, ResourceUsage, SubscriptionStatus, UsageSummary, utc_now
from services.document_store import DocumentStore, get_document_store
from services.plan_registry import plan_registry, calculate_usage_percentage, is_near_limit
from services.quota_errors import LimitExceeded, SubscriptionNotFound, UnknownPlanTier

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUBSCRIPTIONS_COLLECTION = "subscriptions"

# Counter fields are private to this module
_COUNTER_FIELDS = {
    ResourceKind.SUBJECT: "current_subjects",
    ResourceKind.STUDENT: "current_students",
}
_LIMIT_FIELDS = {
    ResourceKind.SUBJECT: "subject_limit",
    ResourceKind.STUDENT: "student_limit",
}
_PROTECTED_FIELDS = frozenset(_COUNTER_FIELDS.values())


def strip_counter_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Drop ledger counters from a generic subscription update."""
    dropped = _PROTECTED_FIELDS.intersection(fields)
    if dropped:
        logger.warning(f"Ignoring direct write to ledger counters: {sorted(dropped)}")
    return {k: v for k, v in fields.items() if k not in _PROTECTED_FIELDS}


def initial_counters(subjects: int = 0, students: int = 0) -> Dict[str, int]:
    """Counter fields for a brand-new subscription document."""
    return {
        _COUNTER_FIELDS[ResourceKind.SUBJECT]: max(0, int(subjects)),
        _COUNTER_FIELDS[ResourceKind.STUDENT]: max(0, int(students)),
    }


def read_counters(subscription: Dict[str, Any]) -> Dict[str, int]:
    """{'subjects': n, 'students': n} from a subscription document."""
    return {
        "subjects": subscription.get(_COUNTER_FIELDS[ResourceKind.SUBJECT], 0) or 0,
        "students": subscription.get(_COUNTER_FIELDS[ResourceKind.STUDENT], 0) or 0,
    }


def _resolve_kind(resource_kind: Union[str, ResourceKind]) -> ResourceKind:
    return ResourceKind(resource_kind)


class UsageLedgerService:
    """Limit gate over the per-tenant usage ledger."""

    def __init__(self, store: Optional[DocumentStore] = None):
        self._store = store

    @property
    def store(self) -> DocumentStore:
        return self._store or get_document_store()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_subscription(self, tenant_id: str) -> Dict[str, Any]:
        subscription = await self.store.get(SUBSCRIPTIONS_COLLECTION, tenant_id)
        if not subscription:
            raise SubscriptionNotFound(tenant_id)
        return subscription

    async def check_limit(self, tenant_id: str, resource_kind: Union[str, ResourceKind]) -> bool:
        """True when one more resource fits under the tenant's limit. Reserves nothing."""
        kind = _resolve_kind(resource_kind)
        subscription = await self.get_subscription(tenant_id)
        current = subscription.get(_COUNTER_FIELDS[kind], 0)
        limit = subscription.get(_LIMIT_FIELDS[kind], 0)
        return current < limit

    async def enforce_limit(self, tenant_id: str, resource_kind: Union[str, ResourceKind]) -> None:
        """Raise LimitExceeded when check_limit would return False."""
        kind = _resolve_kind(resource_kind)
        subscription = await self.get_subscription(tenant_id)
        if subscription.get(_COUNTER_FIELDS[kind], 0) >= subscription.get(_LIMIT_FIELDS[kind], 0):
            raise self._limit_exceeded(tenant_id, kind, subscription)

    async def get_usage_summary(self, tenant_id: str) -> UsageSummary:
        subscription = await self.get_subscription(tenant_id)
        return UsageSummary(
            tenant_id=tenant_id,
            plan_tier=PlanTier(subscription.get("plan_tier", PlanTier.FREE.value)),
            status=SubscriptionStatus(subscription.get("status", SubscriptionStatus.ACTIVE.value)),
            subjects=self._resource_usage(subscription, ResourceKind.SUBJECT),
            students=self._resource_usage(subscription, ResourceKind.STUDENT),
            question_limit=subscription.get("question_limit", 0),
        )

    # -------------------------------------------------------------------------
    # Atomic counter updates
    # -------------------------------------------------------------------------

    async def increment_usage(self, tenant_id: str, resource_kind: Union[str, ResourceKind]) -> int:
        """Atomically add 1 to the counter. Returns the new value."""
        kind = _resolve_kind(resource_kind)
        field = _COUNTER_FIELDS[kind]
        updated = await self.store.atomic_add(
            SUBSCRIPTIONS_COLLECTION, tenant_id, field, 1,
            set_fields={"updated_at": utc_now()},
        )
        if updated is None:
            raise SubscriptionNotFound(tenant_id)
        logger.info(f"Usage incremented: tenant={tenant_id} {field}={updated[field]}")
        return updated[field]

    async def decrement_usage(self, tenant_id: str, resource_kind: Union[str, ResourceKind]) -> int:
        """Atomically subtract 1, floored at 0. Returns the new value."""
        kind = _resolve_kind(resource_kind)
        field = _COUNTER_FIELDS[kind]
        updated = await self.store.atomic_add(
            SUBSCRIPTIONS_COLLECTION, tenant_id, field, -1,
            condition={field: {"$gt": 0}},
            set_fields={"updated_at": utc_now()},
        )
        if updated is not None:
            logger.info(f"Usage decremented: tenant={tenant_id} {field}={updated[field]}")
            return updated[field]

        # Nothing matched: either no subscription or the counter is already 0
        subscription = await self.get_subscription(tenant_id)
        logger.warning(f"Decrement ignored, {field} already at floor for tenant {tenant_id}")
        return subscription.get(field, 0)

    async def try_acquire(self, tenant_id: str, resource_kind: Union[str, ResourceKind]) -> bool:
        """
        Reserve one unit of capacity: increment only while current < limit.

        The comparison and the increment happen in the same store operation, so
        concurrent callers can never push the counter past the limit.
        """
        kind = _resolve_kind(resource_kind)
        field = _COUNTER_FIELDS[kind]
        limit_field = _LIMIT_FIELDS[kind]
        updated = await self.store.atomic_add(
            SUBSCRIPTIONS_COLLECTION, tenant_id, field, 1,
            condition={"$expr": {"$lt": [f"${field}", f"${limit_field}"]}},
            set_fields={"updated_at": utc_now()},
        )
        if updated is not None:
            logger.info(f"Capacity acquired: tenant={tenant_id} {field}={updated[field]}/{updated[limit_field]}")
            return True

        subscription = await self.get_subscription(tenant_id)
        logger.warning(
            f"Limit reached for tenant {tenant_id}: "
            f"{field}={subscription.get(field, 0)}/{subscription.get(limit_field, 0)}"
        )
        return False

    async def release(self, tenant_id: str, resource_kind: Union[str, ResourceKind]) -> int:
        """Give back capacity taken by try_acquire."""
        return await self.decrement_usage(tenant_id, resource_kind)

    async def register_with_quota(
        self,
        tenant_id: str,
        resource_kind: Union[str, ResourceKind],
        register: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Reserve capacity, then run the caller's registration.

        - No capacity: raises LimitExceeded and register() is never called.
        - register() fails: the reservation is released and the error re-raised,
          leaving the counter where it was.
        """
        kind = _resolve_kind(resource_kind)
        if not await self.try_acquire(tenant_id, kind):
            subscription = await self.get_subscription(tenant_id)
            raise self._limit_exceeded(tenant_id, kind, subscription)

        try:
            return await register()
        except Exception:
            logger.warning(f"Registration failed for tenant {tenant_id} ({kind.value}); releasing reserved capacity")
            try:
                await self.release(tenant_id, kind)
            except Exception as release_error:
                logger.error(f"Failed to release {kind.value} capacity for tenant {tenant_id}: {release_error}")
            raise

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _resource_usage(self, subscription: Dict[str, Any], kind: ResourceKind) -> ResourceUsage:
        current = subscription.get(_COUNTER_FIELDS[kind], 0)
        limit = subscription.get(_LIMIT_FIELDS[kind], 0)
        return ResourceUsage(
            current=current,
            limit=limit,
            percentage=calculate_usage_percentage(current, limit),
            near_limit=is_near_limit(current, limit),
            at_limit=current >= limit,
        )

    def _limit_exceeded(self, tenant_id: str, kind: ResourceKind, subscription: Dict[str, Any]) -> LimitExceeded:
        current = subscription.get(_COUNTER_FIELDS[kind], 0)
        limit = subscription.get(_LIMIT_FIELDS[kind], 0)
        plan_tier = subscription.get("plan_tier")
        try:
            upgrade = plan_registry.next_tier_for(kind, current + 1, plan_tier)
        except UnknownPlanTier:
            upgrade = None
        return LimitExceeded(
            tenant_id=tenant_id,
            resource_kind=kind.value,
            current=current,
            limit=limit,
            plan_tier=plan_tier,
            upgrade_to=upgrade.value if upgrade else None,
        )


# Singleton bound to the process-wide store
usage_ledger = UsageLedgerService()
