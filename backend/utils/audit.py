from models import SubscriptionEvent, SubscriptionEventType
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

EVENTS_COLLECTION = "subscription_events"


def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after, "removed": {}, "changed": {}}

    if not after:
        return {"added": {}, "removed": before, "changed": {}}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)

        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {
                "from": before_val,
                "to": after_val
            }

    # Remove empty categories
    return {k: v for k, v in diff.items() if v}


async def log_subscription_event(
    store,
    tenant_id: str,
    event_type: SubscriptionEventType,
    from_plan: Optional[str] = None,
    to_plan: Optional[str] = None,
    status: Optional[str] = None,
    actor_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Record a subscription lifecycle event.

    Args:
        store: DocumentStore to write to
        tenant_id: Tenant the event belongs to
        event_type: Lifecycle event type
        from_plan / to_plan: Plan tiers for upgrades and downgrades
        status: Subscription status after the event
        before_state / after_state: Optional snapshots; a diff is stored in metadata
        metadata: Additional metadata (reason, amount, processor reference, ...)
    """
    try:
        enriched_metadata = metadata.copy() if metadata else {}
        if before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff

        event = SubscriptionEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            from_plan=from_plan,
            to_plan=to_plan,
            status=status,
            actor_id=actor_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
        )
        doc = event.model_dump()
        doc["event_type"] = event.event_type.value

        await store.create(EVENTS_COLLECTION, event.event_id, doc)
        logger.info(f"Subscription event logged: {event_type.value} for tenant {tenant_id}")
        return event.event_id
    except Exception as e:
        logger.error(f"Failed to log subscription event {event_type.value} for tenant {tenant_id}: {e}")
        # Never fail the main operation due to event log failure
        return ""


async def get_subscription_events(store, tenant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent events for a tenant, newest first."""
    events = await store.find_where(EVENTS_COLLECTION, {"tenant_id": tenant_id})
    events.sort(key=lambda e: e.get("timestamp"), reverse=True)
    return events[:limit]
