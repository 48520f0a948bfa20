"""
Subscription metrics for the admin dashboard.

- Active subscriptions per tier
- Lifecycle event counts over a date range
- Daily upgrade/downgrade trend

Read-only. Everything is derived from the subscriptions collection and the
subscription event log.
"""
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
import logging

from models import PlanTier, SubscriptionEventType, SubscriptionStatus, utc_now
from services.document_store import DocumentStore, get_document_store
from services.plan_registry import TIER_ORDER, plan_registry
from services.usage_ledger import SUBSCRIPTIONS_COLLECTION
from utils.audit import EVENTS_COLLECTION

logger = logging.getLogger(__name__)

# event_stats key -> event type
_EVENT_STAT_KEYS = {
    "upgrades": SubscriptionEventType.PLAN_UPGRADE,
    "downgrades": SubscriptionEventType.PLAN_DOWNGRADE,
    "cancellations": SubscriptionEventType.SUBSCRIPTION_CANCELLED,
    "renewals": SubscriptionEventType.SUBSCRIPTION_RENEWAL,
    "grace_periods": SubscriptionEventType.GRACE_PERIOD_ACTIVATED,
    "expirations": SubscriptionEventType.SUBSCRIPTION_EXPIRED,
}

_TREND_KEYS = ("upgrades", "downgrades", "renewals", "cancellations")


def _timestamp_range(start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Any]:
    bounds = {}
    if start:
        bounds["$gte"] = start
    if end:
        bounds["$lte"] = end
    return bounds


class SubscriptionMetricsService:
    """Aggregates subscription counts and lifecycle events."""

    def __init__(self, store: Optional[DocumentStore] = None):
        self._store = store

    @property
    def store(self) -> DocumentStore:
        return self._store or get_document_store()

    async def get_active_subscriptions_by_tier(
        self, plan_tier: Optional[Union[str, PlanTier]] = None,
    ) -> Dict[str, int]:
        """
        Active subscription counts. With no tier: every tier plus "total".
        With a tier: only that tier's count.
        """
        if plan_tier is not None:
            tier = plan_registry.resolve_tier(plan_tier)
            count = await self.store.count_where(
                SUBSCRIPTIONS_COLLECTION,
                {"status": SubscriptionStatus.ACTIVE.value, "plan_tier": tier.value},
            )
            return {tier.value: count}

        active = await self.store.find_where(
            SUBSCRIPTIONS_COLLECTION, {"status": SubscriptionStatus.ACTIVE.value},
        )
        counts = {tier.value: 0 for tier in TIER_ORDER}
        for subscription in active:
            tier = subscription.get("plan_tier")
            if tier in counts:
                counts[tier] += 1
        counts["total"] = len(active)
        return counts

    async def find_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[SubscriptionEventType] = None,
    ) -> List[Dict[str, Any]]:
        """Lifecycle events in [start, end], oldest first."""
        query: Dict[str, Any] = {}
        bounds = _timestamp_range(start, end)
        if bounds:
            query["timestamp"] = bounds
        if event_type:
            query["event_type"] = event_type.value
        events = await self.store.find_where(EVENTS_COLLECTION, query)
        events.sort(key=lambda e: e.get("timestamp"))
        return events

    async def get_subscription_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        subscription_counts = await self.get_active_subscriptions_by_tier()
        events = await self.find_events(start, end)

        event_stats = {key: 0 for key in _EVENT_STAT_KEYS}
        by_type = {event_type.value: key for key, event_type in _EVENT_STAT_KEYS.items()}
        for event in events:
            key = by_type.get(event.get("event_type"))
            if key:
                event_stats[key] += 1

        return {
            "subscription_counts": subscription_counts,
            "event_stats": event_stats,
            "total_events": len(events),
            "date_range": {
                "start": start.isoformat() if start else None,
                "end": end.isoformat() if end else None,
            },
        }

    async def get_subscription_trends(self, days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        One row per day for the last `days` days (today included), oldest first:
        {"date": "YYYY-MM-DD", "upgrades": n, "downgrades": n, "renewals": n, "cancellations": n}
        """
        if days < 1:
            raise ValueError("days must be at least 1")
        now = now or utc_now()
        first_day = now.date() - timedelta(days=days - 1)
        start = datetime.combine(first_day, time.min, tzinfo=timezone.utc)

        daily = {}
        for offset in range(days):
            day = (first_day + timedelta(days=offset)).isoformat()
            daily[day] = {"date": day, **{key: 0 for key in _TREND_KEYS}}

        by_type = {_EVENT_STAT_KEYS[key].value: key for key in _TREND_KEYS}
        for event in await self.find_events(start, now):
            key = by_type.get(event.get("event_type"))
            timestamp = event.get("timestamp")
            if not key or not timestamp:
                continue
            row = daily.get(timestamp.date().isoformat())
            if row:
                row[key] += 1

        logger.info(f"Subscription trends computed for {days} days from {first_day.isoformat()}")
        return list(daily.values())


# Singleton instance
subscription_metrics = SubscriptionMetricsService()
