"""
marketbill/models/plan.py

Plan model for seller subscriptions.

Plans are named tiers (Basic, Pro, Premium) with a price, a billing period,
a duration in days and a set of feature limits. A plan targets one seller
role or both.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


ECOMMERCE_SELLER = "ecommerceSeller"
REAL_ESTATE_SELLER = "realEstateSeller"

SELLER_ROLES = (ECOMMERCE_SELLER, REAL_ESTATE_SELLER)
TARGET_ROLES = SELLER_ROLES + ("both",)
PLAN_NAMES = ("Basic", "Pro", "Premium")
BILLING_PERIODS = ("monthly", "yearly")

# The zero-price tier
FREE_PLAN_NAME = "Basic"


class PlanFeatures(BaseModel):
    """
    Feature limits granted by a plan.

    - max_listings: 0 means unlimited
    - featured_listings_count: concurrent featured placements, 0 means unlimited
    - boosted_visibility: may boost listings
    - priority_support: informational flag for support tooling
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    max_listings: int = 0
    featured_listings_count: int = 0
    boosted_visibility: bool = False
    priority_support: bool = False


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    plan_id: str
    name: str
    price: float
    billing_period: str
    duration_days: int
    features: PlanFeatures
    target_role: str
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_free(self) -> bool:
        return self.price == 0

    def available_for(self, role: str) -> bool:
        return self.target_role == "both" or self.target_role == role
