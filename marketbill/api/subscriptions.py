"""
Seller subscription API routes.

- GET  /api/subscriptions/plans?role=     Active plans for a role
- POST /api/subscriptions/intent          Open a payment intent (or signal a free plan)
- POST /api/subscriptions/subscribe       Activate a free plan
- POST /api/subscriptions/cancel          Cancel the caller's subscription for a role
- GET  /api/subscriptions/mine?role=      Current subscription (lazily expired)
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from marketbill.core.auth import get_current_user_id
from marketbill.features.billing.intents import issue_intent
from marketbill.features.plans.service import list_plans
from marketbill.features.subscriptions.service import (
    subscribe,
    get_current_subscription,
    cancel_subscription,
)


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class PlanRoleRequest(BaseModel):
    """Request body carrying planId and role."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    plan_id: str
    role: str


class RoleRequest(BaseModel):
    role: str


@router.get("/plans")
def get_plans(role: str = Query(...)):
    plans = list_plans(role)
    return {"plans": [p.model_dump(by_alias=True, mode="json") for p in plans]}


@router.post("/intent")
def create_intent(body: PlanRoleRequest, user_id: str = Depends(get_current_user_id)):
    """
    Returns {"freePlan": true} for a zero-price plan, otherwise
    {"freePlan": false, "clientSecret", "intentId"} for client-side confirmation.
    """
    result = issue_intent(user_id, body.plan_id, body.role)
    if result.free_plan:
        return {"freePlan": True, "message": "This is a free plan"}
    return {
        "freePlan": False,
        "clientSecret": result.client_secret,
        "intentId": result.intent_id,
    }


@router.post("/subscribe", status_code=201)
def subscribe_free(body: PlanRoleRequest, user_id: str = Depends(get_current_user_id)):
    """Free plans only. Paid plans answer 402 with requiresPayment: true."""
    subscription = subscribe(user_id, body.plan_id, body.role)
    return {
        "message": "Subscription activated successfully",
        "subscription": subscription.model_dump(by_alias=True, mode="json"),
    }


@router.post("/cancel")
def cancel(body: RoleRequest, user_id: str = Depends(get_current_user_id)):
    subscription = cancel_subscription(user_id, body.role)
    return {
        "message": "Subscription cancelled successfully",
        "subscription": subscription.model_dump(by_alias=True, mode="json"),
    }


@router.get("/mine")
def my_subscription(role: str = Query(...), user_id: str = Depends(get_current_user_id)):
    subscription = get_current_subscription(user_id, role)
    return {"subscription": subscription.model_dump(by_alias=True, mode="json") if subscription else None}
