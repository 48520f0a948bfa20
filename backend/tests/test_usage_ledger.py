"""
Usage ledger and limit gate.

- Counters move only through single atomic store updates.
- try_acquire never lets concurrent callers exceed the limit.
- Counters never go negative.
- A downgrade keeps counters; the gate then blocks new registrations only.
"""
import asyncio
import pytest

from models import PlanTier, ResourceKind, UsageCounts
from services.quota_errors import LimitExceeded, SubscriptionNotFound
from services.subscription_lifecycle import SubscriptionLifecycleService
from services.usage_ledger import SUBSCRIPTIONS_COLLECTION, UsageLedgerService, strip_counter_fields

pytestmark = pytest.mark.asyncio

TENANT_ID = "teacher-1"


async def _subscribe(store, tier=PlanTier.FREE, subjects=0, students=0, tenant_id=TENANT_ID):
    lifecycle = SubscriptionLifecycleService(store=store, gateway=None, expiry_policy="expire")
    await lifecycle.create_subscription(
        tenant_id, tenant_name="John Doe", tier=tier, usage=UsageCounts(subjects=subjects, students=students),
    )
    return UsageLedgerService(store=store)


class TestCheckLimit:
    async def test_under_limit(self, store):
        ledger = await _subscribe(store, subjects=2)
        assert await ledger.check_limit(TENANT_ID, ResourceKind.SUBJECT) is True

    async def test_at_limit(self, store):
        ledger = await _subscribe(store, subjects=3)
        assert await ledger.check_limit(TENANT_ID, "subject") is False

    async def test_no_subscription(self, store):
        ledger = UsageLedgerService(store=store)
        with pytest.raises(SubscriptionNotFound):
            await ledger.check_limit("nobody", ResourceKind.STUDENT)

    async def test_enforce_limit_carries_upgrade_suggestion(self, store):
        ledger = await _subscribe(store, students=10)
        with pytest.raises(LimitExceeded) as exc:
            await ledger.enforce_limit(TENANT_ID, ResourceKind.STUDENT)

        detail = exc.value.to_dict()
        assert detail["current"] == 10
        assert detail["limit"] == 10
        assert detail["plan_tier"] == "free"
        assert detail["upgrade_to"] == "premium"
        assert detail["upgrade_required"] is True


class TestCounters:
    async def test_increment_and_decrement(self, store):
        ledger = await _subscribe(store, subjects=1)
        assert await ledger.increment_usage(TENANT_ID, ResourceKind.SUBJECT) == 2
        assert await ledger.decrement_usage(TENANT_ID, ResourceKind.SUBJECT) == 1

    async def test_increment_missing_subscription(self, store):
        ledger = UsageLedgerService(store=store)
        with pytest.raises(SubscriptionNotFound):
            await ledger.increment_usage("nobody", ResourceKind.SUBJECT)

    async def test_decrement_floors_at_zero(self, store):
        ledger = await _subscribe(store)
        assert await ledger.decrement_usage(TENANT_ID, ResourceKind.STUDENT) == 0
        assert await ledger.decrement_usage(TENANT_ID, ResourceKind.STUDENT) == 0
        assert store.raw(SUBSCRIPTIONS_COLLECTION, TENANT_ID)["current_students"] == 0

    async def test_concurrent_decrements_never_negative(self, store):
        ledger = await _subscribe(store, students=3)
        await asyncio.gather(*(ledger.decrement_usage(TENANT_ID, ResourceKind.STUDENT) for _ in range(10)))
        assert store.raw(SUBSCRIPTIONS_COLLECTION, TENANT_ID)["current_students"] == 0

    async def test_concurrent_increments_are_not_lost(self, store):
        ledger = await _subscribe(store, tier=PlanTier.VIP)
        await asyncio.gather(*(ledger.increment_usage(TENANT_ID, ResourceKind.STUDENT) for _ in range(25)))
        assert store.raw(SUBSCRIPTIONS_COLLECTION, TENANT_ID)["current_students"] == 25


class TestTryAcquire:
    async def test_acquire_until_full(self, store):
        ledger = await _subscribe(store, subjects=1)
        assert await ledger.try_acquire(TENANT_ID, ResourceKind.SUBJECT) is True
        assert await ledger.try_acquire(TENANT_ID, ResourceKind.SUBJECT) is True
        assert await ledger.try_acquire(TENANT_ID, ResourceKind.SUBJECT) is False
        assert store.raw(SUBSCRIPTIONS_COLLECTION, TENANT_ID)["current_subjects"] == 3

    async def test_concurrent_burst_never_exceeds_limit(self, store):
        ledger = await _subscribe(store, students=9)
        results = await asyncio.gather(
            *(ledger.try_acquire(TENANT_ID, ResourceKind.STUDENT) for _ in range(20))
        )
        assert results.count(True) == 1
        assert store.raw(SUBSCRIPTIONS_COLLECTION, TENANT_ID)["current_students"] == 10

    async def test_release_gives_capacity_back(self, store):
        ledger = await _subscribe(store, subjects=3)
        assert await ledger.try_acquire(TENANT_ID, ResourceKind.SUBJECT) is False
        await ledger.release(TENANT_ID, ResourceKind.SUBJECT)
        assert await ledger.try_acquire(TENANT_ID, ResourceKind.SUBJECT) is True


class TestRegisterWithQuota:
    async def test_successful_registration_keeps_reservation(self, store):
        ledger = await _subscribe(store)

        async def register():
            return {"subject_id": "math"}

        result = await ledger.register_with_quota(TENANT_ID, ResourceKind.SUBJECT, register)
        assert result == {"subject_id": "math"}
        assert store.raw(SUBSCRIPTIONS_COLLECTION, TENANT_ID)["current_subjects"] == 1

    async def test_failed_registration_releases(self, store):
        ledger = await _subscribe(store, subjects=2)

        async def register():
            raise RuntimeError("write failed")

        with pytest.raises(RuntimeError):
            await ledger.register_with_quota(TENANT_ID, ResourceKind.SUBJECT, register)
        assert store.raw(SUBSCRIPTIONS_COLLECTION, TENANT_ID)["current_subjects"] == 2

    async def test_full_tenant_never_calls_register(self, store):
        ledger = await _subscribe(store, subjects=3)
        called = []

        async def register():
            called.append(True)

        with pytest.raises(LimitExceeded):
            await ledger.register_with_quota(TENANT_ID, ResourceKind.SUBJECT, register)
        assert called == []
        assert store.raw(SUBSCRIPTIONS_COLLECTION, TENANT_ID)["current_subjects"] == 3


class TestDowngradeRetention:
    async def test_downgrade_keeps_counters_and_blocks_new_subjects(self, store):
        ledger = await _subscribe(store, tier=PlanTier.PREMIUM, subjects=5, students=18)
        lifecycle = SubscriptionLifecycleService(store=store, expiry_policy="expire")

        result = await lifecycle.downgrade_to_free(TENANT_ID, reason="test")

        doc = store.raw(SUBSCRIPTIONS_COLLECTION, TENANT_ID)
        assert doc["current_subjects"] == 5
        assert doc["current_students"] == 18
        assert doc["subject_limit"] == 3
        assert doc["student_limit"] == 10
        assert result["exceeds_limits"] == {"subjects": True, "students": True}
        assert await ledger.check_limit(TENANT_ID, ResourceKind.SUBJECT) is False
        assert await ledger.try_acquire(TENANT_ID, ResourceKind.SUBJECT) is False

    async def test_decrement_still_allowed_above_limit(self, store):
        ledger = await _subscribe(store, tier=PlanTier.PREMIUM, subjects=5)
        await SubscriptionLifecycleService(store=store).downgrade_to_free(TENANT_ID)
        assert await ledger.decrement_usage(TENANT_ID, ResourceKind.SUBJECT) == 4


class TestUsageSummary:
    async def test_summary_values(self, store):
        ledger = await _subscribe(store, subjects=3, students=8)
        summary = await ledger.get_usage_summary(TENANT_ID)

        assert summary.plan_tier == PlanTier.FREE
        assert summary.subjects.at_limit is True
        assert summary.subjects.percentage == 100
        assert summary.students.near_limit is True
        assert summary.students.at_limit is False
        assert summary.question_limit == 10


async def test_strip_counter_fields():
    assert strip_counter_fields({"current_subjects": 9, "tenant_name": "x"}) == {"tenant_name": "x"}
