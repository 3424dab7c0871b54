"""
marketbill/models/subscription.py

Subscription model: a seller's entitlement for one role.

Constraint: at most one active subscription per (user_id, role).
Terminal states (expired, cancelled) are never reactivated by the engine;
renewal creates a new subscription.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from marketbill.models.plan import Plan


STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_CANCELLED = "cancelled"

SUBSCRIPTION_STATUSES = (STATUS_ACTIVE, STATUS_EXPIRED, STATUS_CANCELLED)


class SubscriptionUsage(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    listings_used: int = 0
    featured_used: int = 0


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    subscription_id: str
    user_id: str
    plan_id: str
    role: str
    start_date: datetime
    end_date: datetime
    status: str
    auto_renew: bool
    usage: SubscriptionUsage
    payment_intent_id: Optional[str] = None
    created_at: Optional[datetime] = None
    plan: Optional[Plan] = None

    def is_current(self, now: datetime) -> bool:
        """Active and inside its [start_date, end_date] window."""
        return self.status == STATUS_ACTIVE and self.start_date <= now <= self.end_date
