"""
Admin quota routes: X-Admin-Key guard, error mapping and response shapes.
Services are bound to an in-memory store; no MongoDB needed.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from services.subscription_lifecycle import SubscriptionLifecycleService
from services.subscription_metrics import SubscriptionMetricsService
from services.usage_ledger import SUBSCRIPTIONS_COLLECTION, UsageLedgerService

from fakes import FakeRenewalGateway, InMemoryDocumentStore


def _subscription(tenant_id, tier="free", subjects=0, students=0, status="active"):
    limits = {
        "free": (3, 10, 10),
        "premium": (20, 30, 30),
        "vip": (30, 100, 100),
    }[tier]
    return {
        "id": tenant_id,
        "tenant_id": tenant_id,
        "plan_tier": tier,
        "status": status,
        "subject_limit": limits[0],
        "student_limit": limits[1],
        "question_limit": limits[2],
        "current_subjects": subjects,
        "current_students": students,
        "currency": "NGN",
        "amount": 0,
        "expiry_date": None,
        "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }


@pytest.fixture
def bound_store():
    store = InMemoryDocumentStore()
    ledger = UsageLedgerService(store=store)
    lifecycle = SubscriptionLifecycleService(store=store, gateway=FakeRenewalGateway(), expiry_policy="expire")
    metrics = SubscriptionMetricsService(store=store)
    with patch("routes.admin_quota.usage_ledger", ledger), \
         patch("routes.admin_quota.subscription_lifecycle", lifecycle), \
         patch("routes.admin_quota.subscription_metrics", metrics):
        yield store


class TestAdminGuard:
    def test_missing_key_is_401(self, client):
        response = client.get("/api/admin/quota/plans")
        assert response.status_code == 401

    def test_wrong_key_is_403(self, client):
        response = client.get("/api/admin/quota/plans", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 403

    def test_unconfigured_key_is_503(self, client, monkeypatch):
        monkeypatch.setenv("ADMIN_API_KEY", "")
        response = client.get("/api/admin/quota/plans", headers={"X-Admin-Key": "anything"})
        assert response.status_code == 503

    def test_valid_key(self, client, admin_headers):
        response = client.get("/api/admin/quota/plans", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["plans"]["premium"]["subject_limit"] == 20


class TestTenantUsage:
    def test_usage_summary(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1", subjects=3, students=8)])

        response = client.get("/api/admin/quota/tenants/t1/usage", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["plan_tier"] == "free"
        assert body["subjects"] == {"current": 3, "limit": 3, "percentage": 100, "near_limit": True, "at_limit": True}
        assert body["students"]["near_limit"] is True

    def test_unknown_tenant_is_404(self, client, admin_headers, bound_store):
        response = client.get("/api/admin/quota/tenants/ghost/usage", headers=admin_headers)
        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "SUBSCRIPTION_NOT_FOUND"

    def test_events_listing(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1", tier="premium")])
        client.post("/api/admin/quota/tenants/t1/downgrade", json={}, headers=admin_headers)

        response = client.get("/api/admin/quota/tenants/t1/events", headers=admin_headers)

        assert response.status_code == 200
        events = response.json()["events"]
        assert [e["event_type"] for e in events] == ["plan_downgrade"]


class TestPlanChanges:
    def test_downgrade_reports_exceeded_limits(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1", tier="premium", subjects=5, students=18)])

        response = client.post(
            "/api/admin/quota/tenants/t1/downgrade", json={"reason": "non-payment"}, headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "tenant_id": "t1",
            "plan_tier": "free",
            "exceeds_limits": {"subjects": True, "students": True},
        }
        doc = bound_store.raw(SUBSCRIPTIONS_COLLECTION, "t1")
        assert doc["current_subjects"] == 5

    def test_upgrade(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1")])

        response = client.post(
            "/api/admin/quota/tenants/t1/plan",
            json={"tier": "vip", "processor_subscription_ref": "sub_1"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["plan_tier"] == "vip"
        assert body["student_limit"] == 100
        assert bound_store.raw(SUBSCRIPTIONS_COLLECTION, "t1")["processor_subscription_ref"] == "sub_1"

    def test_unknown_tier_is_400(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1")])
        response = client.post("/api/admin/quota/tenants/t1/plan", json={"tier": "gold"}, headers=admin_headers)
        assert response.status_code == 400

    def test_cancelled_tenant_is_409(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1", status="cancelled")])
        response = client.post("/api/admin/quota/tenants/t1/plan", json={"tier": "premium"}, headers=admin_headers)
        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "INVALID_TRANSITION"

    def test_cancelled_tenant_cannot_move_to_free(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1", tier="premium", status="cancelled")])

        response = client.post("/api/admin/quota/tenants/t1/plan", json={"tier": "free"}, headers=admin_headers)

        assert response.status_code == 409
        doc = bound_store.raw(SUBSCRIPTIONS_COLLECTION, "t1")
        assert doc["status"] == "cancelled"
        assert doc["plan_tier"] == "premium"

    def test_cancelled_tenant_downgrade_is_409(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1", tier="premium", status="cancelled")])
        response = client.post("/api/admin/quota/tenants/t1/downgrade", json={}, headers=admin_headers)
        assert response.status_code == 409

    def test_unpriced_currency_is_422(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1")])

        response = client.post(
            "/api/admin/quota/tenants/t1/plan", json={"tier": "premium", "currency": "EUR"}, headers=admin_headers,
        )

        assert response.status_code == 422
        assert bound_store.raw(SUBSCRIPTIONS_COLLECTION, "t1")["plan_tier"] == "free"

    def test_usd_checkout(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1")])

        response = client.post(
            "/api/admin/quota/tenants/t1/plan", json={"tier": "premium", "currency": "USD"}, headers=admin_headers,
        )

        assert response.status_code == 200
        doc = bound_store.raw(SUBSCRIPTIONS_COLLECTION, "t1")
        assert doc["currency"] == "USD"
        assert doc["amount"] == 1_000

    def test_plan_change_records_admin_actor(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1")])
        client.post("/api/admin/quota/tenants/t1/plan", json={"tier": "vip"}, headers=admin_headers)

        response = client.get("/api/admin/quota/tenants/t1/events", headers=admin_headers)

        (event,) = response.json()["events"]
        assert event["actor_id"] == "admin_api_key"


class TestJobs:
    def test_backfill_runs_job(self, client, admin_headers):
        job = AsyncMock(return_value={"message": "Quota backfill: 2 created", "total": 2, "created": 2})
        with patch("routes.admin_quota.run_quota_backfill", job):
            response = client.post("/api/admin/quota/migration/backfill", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["created"] == 2
        job.assert_awaited_once()

    def test_validation_runs_job(self, client, admin_headers):
        job = AsyncMock(return_value={"message": "ok", "total_tenants": 0})
        with patch("routes.admin_quota.run_quota_validation", job):
            response = client.get("/api/admin/quota/migration/validation", headers=admin_headers)
        assert response.status_code == 200

    def test_store_outage_is_503(self, client, admin_headers):
        from services.quota_errors import StoreUnavailable

        job = AsyncMock(side_effect=StoreUnavailable("find users", TimeoutError("timed out")))
        with patch("routes.admin_quota.run_quota_backfill", job):
            response = client.post("/api/admin/quota/migration/backfill", headers=admin_headers)
        assert response.status_code == 503
        assert response.json()["detail"]["error_code"] == "STORE_UNAVAILABLE"

    def test_lifecycle_sweep(self, client, admin_headers):
        sweep = AsyncMock(return_value={"message": "Processed 0 due renewals; Expired 0 grace periods"})
        with patch("routes.admin_quota.run_lifecycle_sweep", sweep):
            response = client.post("/api/admin/quota/lifecycle/sweep", headers=admin_headers)
        assert response.status_code == 200
        sweep.assert_awaited_once()

    def test_migration_test_run(self, client, admin_headers):
        run = AsyncMock(return_value={"message": "Migration test run passed", "success": True, "stages": {}})
        with patch("routes.admin_quota.run_quota_migration_test", run):
            response = client.post("/api/admin/quota/migration/test-run", headers=admin_headers)
        assert response.json()["success"] is True


class TestMetrics:
    def test_metrics(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [
            _subscription("t1"),
            _subscription("t2", tier="premium"),
            _subscription("t3", tier="vip", status="cancelled"),
        ])
        client.post("/api/admin/quota/tenants/t2/plan", json={"tier": "vip"}, headers=admin_headers)

        response = client.get("/api/admin/quota/metrics", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["subscription_counts"] == {"free": 1, "premium": 0, "vip": 1, "total": 2}
        assert body["event_stats"]["upgrades"] == 1

    def test_metrics_date_range(self, client, admin_headers, bound_store):
        bound_store.seed(SUBSCRIPTIONS_COLLECTION, [_subscription("t1", tier="premium")])
        client.post("/api/admin/quota/tenants/t1/downgrade", json={}, headers=admin_headers)

        response = client.get(
            "/api/admin/quota/metrics",
            params={"start": "2020-01-01T00:00:00", "end": "2020-12-31T00:00:00"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["event_stats"]["downgrades"] == 0
        assert response.json()["date_range"]["start"] == "2020-01-01T00:00:00+00:00"

    def test_trends(self, client, admin_headers, bound_store):
        response = client.get("/api/admin/quota/metrics/trends", params={"days": 3}, headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["days"] == 3
        assert len(body["trends"]) == 3

    def test_trends_days_bounds(self, client, admin_headers, bound_store):
        response = client.get("/api/admin/quota/metrics/trends", params={"days": 0}, headers=admin_headers)
        assert response.status_code == 422
