"""Canonical Plan Registry - Single Source of Truth for plan tiers.

This is the AUTHORITATIVE source for:
- Plan tiers and their numeric limits (subjects, students, questions per exam)
- Pricing in minor units (NGN kobo, USD cents)
- Feature lists shown on pricing screens

RULES:
1. Limits are copied onto a Subscription when a plan is assigned. Editing this
   table never changes existing subscriptions until an explicit plan change.
2. Unknown tiers fail loudly with UnknownPlanTier. There is no silent fallback.
3. Pure data: nothing here touches the store.

Plan Structure:
- free:    3 subjects, 10 students, 10 questions per exam, no charge, never expires
- premium: 20 subjects, 30 students, 30 questions per exam, monthly
- vip:     30 subjects, 100 students, 100 questions per exam, monthly
"""
from typing import Dict, List, Optional, Tuple, Any, Union
import logging

from models import Currency, PlanDefinition, PlanTier, ResourceKind
from services.quota_errors import UnknownPlanTier, UnsupportedCurrency

logger = logging.getLogger(__name__)

NEAR_LIMIT_THRESHOLD_PERCENT = 80

# Upgrade order used for "upgrade to ..." suggestions
TIER_ORDER = [PlanTier.FREE, PlanTier.PREMIUM, PlanTier.VIP]


# ============================================================================
# PLAN DEFINITIONS
# ============================================================================
PLAN_DEFINITIONS: Dict[PlanTier, PlanDefinition] = {
    PlanTier.FREE: PlanDefinition(
        tier=PlanTier.FREE,
        name="Free Plan",
        subject_limit=3,
        student_limit=10,
        question_limit=10,
        price_minor={"NGN": 0, "USD": 0},
        features=[
            "3 subjects",
            "Up to 10 students",
            "10 questions per exam",
            "Best for trying out",
        ],
        billing_cycle=None,
    ),
    PlanTier.PREMIUM: PlanDefinition(
        tier=PlanTier.PREMIUM,
        name="Premium Plan",
        subject_limit=20,
        student_limit=30,
        question_limit=30,
        price_minor={"NGN": 1_520_000, "USD": 1_000},
        features=[
            "20 subjects",
            "30 students",
            "Up to 30 questions per exam",
            "Priority support",
            "Advanced analytics",
        ],
        billing_cycle="monthly",
    ),
    PlanTier.VIP: PlanDefinition(
        tier=PlanTier.VIP,
        name="VIP Plan",
        subject_limit=30,
        student_limit=100,
        question_limit=100,
        price_minor={"NGN": 5_000_000, "USD": 3_300},
        features=[
            "30 subjects",
            "100 students",
            "Up to 100 questions per exam",
            "24/7 support",
            "Priority processing",
        ],
        billing_cycle="monthly",
    ),
}

LIMIT_FIELDS = {
    ResourceKind.SUBJECT: "subject_limit",
    ResourceKind.STUDENT: "student_limit",
}


def calculate_usage_percentage(current: int, limit: int) -> int:
    """Usage as a rounded percentage; 0 when the limit is 0."""
    if limit <= 0:
        return 0
    return round((current / limit) * 100)


def is_near_limit(current: int, limit: int) -> bool:
    return calculate_usage_percentage(current, limit) >= NEAR_LIMIT_THRESHOLD_PERCENT


def check_question_limit(question_limit: int, current_question_count: int) -> Tuple[bool, Optional[str]]:
    """
    Questions-per-exam check against an in-progress draft.

    Not a ledger operation: the count comes from the draft being edited.
    Returns (is_allowed, error_message).
    """
    if current_question_count >= question_limit:
        return False, f"You've reached the maximum of {question_limit} questions for your plan"
    return True, None


# ============================================================================
# PLAN REGISTRY SERVICE
# ============================================================================
class PlanRegistryService:
    """Central lookup for plan tiers and their limits."""

    def resolve_tier(self, tier: Union[str, PlanTier]) -> PlanTier:
        """Resolve a tier string (case-insensitive) or raise UnknownPlanTier."""
        if isinstance(tier, PlanTier):
            return tier
        if not isinstance(tier, str):
            raise UnknownPlanTier(tier)
        try:
            return PlanTier(tier.strip().lower())
        except ValueError:
            raise UnknownPlanTier(tier) from None

    def get_plan(self, tier: Union[str, PlanTier]) -> PlanDefinition:
        """Get the immutable plan definition for a tier."""
        return PLAN_DEFINITIONS[self.resolve_tier(tier)]

    def get_all_plans(self) -> List[PlanDefinition]:
        return [PLAN_DEFINITIONS[tier] for tier in TIER_ORDER]

    def get_limit(self, tier: Union[str, PlanTier], resource_kind: Union[str, ResourceKind]) -> int:
        plan = self.get_plan(tier)
        return getattr(plan, LIMIT_FIELDS[ResourceKind(resource_kind)])

    def limits_for(self, tier: Union[str, PlanTier]) -> Dict[str, int]:
        """Limit fields to copy onto a subscription at assignment time."""
        plan = self.get_plan(tier)
        return {
            "subject_limit": plan.subject_limit,
            "student_limit": plan.student_limit,
            "question_limit": plan.question_limit,
        }

    def next_tier_for(
        self,
        resource_kind: Union[str, ResourceKind],
        needed: int,
        current_tier: Optional[Union[str, PlanTier]] = None,
    ) -> Optional[PlanTier]:
        """Smallest tier above current_tier whose limit covers `needed`, if any."""
        start = 0
        if current_tier is not None:
            start = TIER_ORDER.index(self.resolve_tier(current_tier)) + 1
        for tier in TIER_ORDER[start:]:
            if self.get_limit(tier, resource_kind) >= needed:
                return tier
        return None

    def resolve_currency(self, currency: Union[str, Currency, None]) -> Currency:
        """Resolve a currency code (case-insensitive) or raise UnsupportedCurrency."""
        if isinstance(currency, Currency):
            return currency
        if not isinstance(currency, str):
            raise UnsupportedCurrency(currency)
        try:
            return Currency(currency.strip().upper())
        except ValueError:
            raise UnsupportedCurrency(currency) from None

    def get_price(self, tier: Union[str, PlanTier], currency: Union[str, Currency] = Currency.NGN) -> int:
        plan = self.get_plan(tier)
        return plan.price_minor[self.resolve_currency(currency).value]

    def is_paid(self, tier: Union[str, PlanTier]) -> bool:
        return self.get_plan(tier).billing_cycle is not None

    def get_plan_matrix(self) -> Dict[str, Any]:
        """Plan comparison table for pricing/admin screens."""
        return {
            plan.tier.value: {
                "name": plan.name,
                "subject_limit": plan.subject_limit,
                "student_limit": plan.student_limit,
                "question_limit": plan.question_limit,
                "price_minor": dict(plan.price_minor),
                "billing_cycle": plan.billing_cycle,
                "features": list(plan.features),
            }
            for plan in self.get_all_plans()
        }


# Singleton instance
plan_registry = PlanRegistryService()
