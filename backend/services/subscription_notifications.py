"""
Subscription notifications.
Single entry point for every tenant-facing subscription message (renewal
reminder, renewal receipt, grace period, downgrade). Messages are queued as
documents in the mail collection; a mail worker delivers them.

Key Principles:
- Queueing never fails the lifecycle operation that triggered it
- Idempotency key doubles as the mail document id, so a re-run sweep queues nothing new
- No recipient email on the tenant record: blocked, not failed
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging
import math
import uuid

from models import NotificationTemplate, utc_now
from services.document_store import DocumentStore, DuplicateDocument, get_document_store
from services.tenant_scope import TenantScope, get_tenant_scope

logger = logging.getLogger(__name__)

MAIL_COLLECTION = "mail"


@dataclass
class NotificationResult:
    outcome: str  # queued | blocked | failed | duplicate_ignored
    message_id: Optional[str] = None
    block_reason: Optional[str] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


def days_until(expiry_date: datetime, now: datetime) -> int:
    """Whole days left, rounded up (1.2 days left -> 2)."""
    return max(0, math.ceil((expiry_date - now) / timedelta(days=1)))


def downgrade_message(usage: Dict[str, int], limits: Dict[str, int], exceeds_limits: Dict[str, bool]) -> str:
    if not any(exceeds_limits.values()):
        return "Your account has been downgraded to the Free plan. All your data has been retained."
    return (
        f"Your account has been downgraded to the Free plan. You currently have "
        f"{usage['subjects']} subjects and {usage['students']} students, which exceeds the "
        f"Free plan limits ({limits['subject_limit']} subjects, {limits['student_limit']} students). "
        f"Your existing data has been retained, but you will not be able to register new subjects "
        f"or students until you remove some or upgrade your plan."
    )


class SubscriptionNotifier:
    """Queues subscription emails for a tenant."""

    def __init__(self, store: Optional[DocumentStore] = None, scope: Optional[TenantScope] = None):
        self._store = store
        self._scope = scope

    @property
    def store(self) -> DocumentStore:
        return self._store or get_document_store()

    @property
    def scope(self) -> TenantScope:
        return self._scope or get_tenant_scope()

    async def queue(
        self,
        template: NotificationTemplate,
        tenant_id: str,
        data: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> NotificationResult:
        """
        Queue one templated email for the tenant.
        Returns NotificationResult with outcome: queued | blocked | failed | duplicate_ignored.
        """
        try:
            tenant = await self.scope.load_tenant(self.store, tenant_id)
        except Exception as e:
            logger.error(f"Notification {template.value} for tenant {tenant_id} failed: {e}")
            return NotificationResult(outcome="failed", error_message=str(e))

        recipient = ((tenant or {}).get("email") or "").strip()
        if not recipient:
            logger.warning(f"Notification {template.value} skipped: tenant {tenant_id} has no email")
            return NotificationResult(outcome="blocked", block_reason="no_recipient")

        message_id = idempotency_key or str(uuid.uuid4())
        doc = {
            "message_id": message_id,
            "tenant_id": tenant_id,
            "to": recipient,
            "template": {
                "name": template.value,
                "data": {"tenant_name": tenant.get("name"), **data},
            },
            "status": "PENDING",
            "idempotency_key": idempotency_key,
            "created_at": utc_now(),
        }
        try:
            await self.store.create(MAIL_COLLECTION, message_id, doc)
        except DuplicateDocument:
            return NotificationResult(
                outcome="duplicate_ignored",
                message_id=message_id,
                details={"idempotency_key": idempotency_key},
            )
        except Exception as e:
            logger.error(f"Notification {template.value} for tenant {tenant_id} failed: {e}")
            return NotificationResult(outcome="failed", message_id=message_id, error_message=str(e))

        logger.info(f"Notification queued: {template.value} for tenant {tenant_id} to {recipient}")
        return NotificationResult(outcome="queued", message_id=message_id)

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    async def renewal_reminder(self, subscription: Dict[str, Any], now: datetime) -> NotificationResult:
        # One reminder per tenant per day while inside the reminder window
        tenant_id = subscription.get("tenant_id") or subscription.get("_id")
        expiry_date = subscription["expiry_date"]
        return await self.queue(
            NotificationTemplate.RENEWAL_REMINDER,
            tenant_id,
            {
                "plan_tier": subscription.get("plan_tier"),
                "expiry_date": expiry_date.date().isoformat(),
                "days_until_expiry": days_until(expiry_date, now),
            },
            idempotency_key=f"renewal-reminder:{tenant_id}:{now.date().isoformat()}",
        )

    async def renewal_succeeded(self, subscription: Dict[str, Any], new_expiry: datetime) -> NotificationResult:
        tenant_id = subscription.get("tenant_id") or subscription.get("_id")
        return await self.queue(
            NotificationTemplate.RENEWAL_SUCCESS,
            tenant_id,
            {
                "plan_tier": subscription.get("plan_tier"),
                "amount": subscription.get("amount"),
                "currency": subscription.get("currency"),
                "expiry_date": new_expiry.date().isoformat(),
            },
            idempotency_key=f"renewal-success:{tenant_id}:{new_expiry.date().isoformat()}",
        )

    async def grace_period_started(self, subscription: Dict[str, Any], grace_period_end: datetime) -> NotificationResult:
        tenant_id = subscription.get("tenant_id") or subscription.get("_id")
        return await self.queue(
            NotificationTemplate.GRACE_PERIOD,
            tenant_id,
            {
                "plan_tier": subscription.get("plan_tier"),
                "grace_period_end": grace_period_end.date().isoformat(),
            },
            idempotency_key=f"grace-period:{tenant_id}:{grace_period_end.isoformat()}",
        )

    async def downgraded(
        self,
        tenant_id: str,
        previous_plan: Optional[str],
        usage: Dict[str, int],
        limits: Dict[str, int],
        exceeds_limits: Dict[str, bool],
    ) -> NotificationResult:
        return await self.queue(
            NotificationTemplate.DOWNGRADE,
            tenant_id,
            {
                "previous_plan": previous_plan,
                "current_subjects": usage["subjects"],
                "current_students": usage["students"],
                "subject_limit": limits["subject_limit"],
                "student_limit": limits["student_limit"],
                "exceeds_limits": any(exceeds_limits.values()),
                "message": downgrade_message(usage, limits, exceeds_limits),
            },
        )

