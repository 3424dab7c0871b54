"""
marketbill/models/featured_listing.py

FeaturedListing: time-bounded promotional placement for a product or property.
"""

from datetime import datetime
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from marketbill.models.plan import ECOMMERCE_SELLER, REAL_ESTATE_SELLER


ITEM_TYPE_ROLES = {
    "product": ECOMMERCE_SELLER,
    "property": REAL_ESTATE_SELLER,
}

FEATURED_PRIORITY = 10
BOOSTED_PRIORITY = 20


class FeaturedListing(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    featured_id: str
    item_type: str
    item_id: str
    owner_id: str
    start_date: datetime
    end_date: datetime
    priority_score: int
    is_boosted: bool

    def is_active(self, now: datetime) -> bool:
        return self.start_date <= now <= self.end_date
