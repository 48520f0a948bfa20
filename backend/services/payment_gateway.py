"""Renewal gateway - the narrow payment interface used by the lifecycle.

The quota engine does not process payments. At renewal time it only needs a
yes/no answer: did the processor collect this period's charge?

Key Principles:
- charge_renewal() returns True only when the processor confirms payment
- Declines return False; transport/API failures raise (the lifecycle treats
  both as a failed renewal and opens a grace period)
- Processor references on the subscription are opaque strings
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import os
import logging

import stripe

logger = logging.getLogger(__name__)

# Processor states that count as a collected renewal
PAID_SUBSCRIPTION_STATUSES = ("active", "trialing")


class RenewalGateway(ABC):
    """Charge (or confirm the charge of) one renewal period."""

    @abstractmethod
    async def charge_renewal(self, subscription: Dict[str, Any]) -> bool:
        ...


class StripeRenewalGateway(RenewalGateway):
    """
    Confirms a renewal through Stripe.

    Stripe bills recurring subscriptions itself; at the renewal date we look up
    the processor subscription and accept the renewal if it is still paid up.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = (api_key or os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

    async def charge_renewal(self, subscription: Dict[str, Any]) -> bool:
        if not self.api_key:
            raise ValueError("STRIPE_API_KEY is not set. Configure env and restart.")

        subscription_ref = subscription.get("processor_subscription_ref")
        if not subscription_ref:
            return False

        processor_sub = stripe.Subscription.retrieve(subscription_ref, api_key=self.api_key)
        status = processor_sub.get("status", "unknown")
        paid = status in PAID_SUBSCRIPTION_STATUSES
        logger.info(
            f"Stripe renewal check for tenant {subscription.get('tenant_id')}: "
            f"subscription={subscription_ref} status={status} paid={paid}"
        )
        return paid


_default_gateway: Optional[RenewalGateway] = None


def get_renewal_gateway() -> RenewalGateway:
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = StripeRenewalGateway()
    return _default_gateway
