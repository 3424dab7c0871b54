"""
Listing promotion API routes.

- POST /api/listings/feature           Feature an owned item (quota-checked)
- POST /api/listings/boost             Boost an owned item (plan must include boost)
- GET  /api/listings/featured          Current placements, boosted first
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from marketbill.core.auth import get_current_user_id
from marketbill.features.entitlements.service import (
    DEFAULT_DURATION_DAYS,
    feature_listing,
    boost_listing,
    list_active_featured,
)


router = APIRouter(prefix="/listings", tags=["listings"])


class PromoteRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    item_id: str
    item_type: str
    duration: int = Field(default=DEFAULT_DURATION_DAYS, description="Days")


@router.post("/feature", status_code=201)
def feature(body: PromoteRequest, user_id: str = Depends(get_current_user_id)):
    featured = feature_listing(user_id, body.item_id, body.item_type, body.duration)
    return {
        "message": "Listing featured successfully",
        "featuredListing": featured.model_dump(by_alias=True, mode="json"),
    }


@router.post("/boost", status_code=201)
def boost(body: PromoteRequest, user_id: str = Depends(get_current_user_id)):
    featured = boost_listing(user_id, body.item_id, body.item_type, body.duration)
    return {
        "message": "Listing boosted successfully",
        "featuredListing": featured.model_dump(by_alias=True, mode="json"),
    }


@router.get("/featured")
def featured(
    item_type: Optional[str] = Query(None, alias="itemType"),
    limit: int = Query(50, ge=1, le=200),
):
    items = list_active_featured(item_type=item_type, limit=limit)
    return {"featuredListings": [f.model_dump(by_alias=True, mode="json") for f in items]}
