"""
Admin-only subscription operations router.
Requires X-Admin-Key header for all endpoints.
Handles plan CRUD, subscription overrides, analytics and payment reconciliation.
"""

import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from marketbill.core.admin_auth import require_admin, AdminActor
from marketbill.features.billing.payments import list_payments
from marketbill.features.plans.service import (
    list_all_plans,
    create_plan,
    update_plan,
    delete_plan,
)
from marketbill.features.subscriptions.ledger import list_subscriptions, subscription_analytics
from marketbill.features.subscriptions.service import admin_override
from marketbill.features.subscriptions.sweeper import run_sweep

logger = logging.getLogger("marketbill.admin_subscriptions")

router = APIRouter(prefix="/admin/subscriptions", tags=["admin"])


# ============================================================================
# Pydantic Models
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlanFeaturesInput(_CamelModel):
    max_listings: Optional[int] = Field(default=None, ge=0)
    featured_listings_count: Optional[int] = Field(default=None, ge=0)
    boosted_visibility: Optional[bool] = None
    priority_support: Optional[bool] = None


class PlanCreateRequest(_CamelModel):
    name: str
    target_role: str
    price: Optional[float] = None
    billing_period: str = "monthly"
    duration: Optional[int] = None
    features: Optional[PlanFeaturesInput] = None
    is_active: bool = True


class PlanUpdateRequest(_CamelModel):
    name: Optional[str] = None
    price: Optional[float] = None
    billing_period: Optional[str] = None
    duration: Optional[int] = None
    features: Optional[PlanFeaturesInput] = None
    target_role: Optional[str] = None
    is_active: Optional[bool] = None


class SubscriptionOverrideRequest(_CamelModel):
    status: Optional[str] = None
    auto_renew: Optional[bool] = None
    end_date: Optional[datetime] = None


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


# ============================================================================
# Plans
# ============================================================================

@router.get("/plans")
def admin_list_plans(actor: AdminActor = Depends(require_admin)):
    return {"plans": [_dump(p) for p in list_all_plans()]}


@router.post("/plans", status_code=201)
def admin_create_plan(body: PlanCreateRequest, actor: AdminActor = Depends(require_admin)):
    plan = create_plan(
        name=body.name,
        target_role=body.target_role,
        price=body.price,
        billing_period=body.billing_period,
        duration_days=body.duration,
        features=body.features.model_dump(exclude_none=True) if body.features else None,
        is_active=body.is_active,
    )
    logger.info("[admin] plan created", extra={"actor_id": actor.actor_id, "plan_id": plan.plan_id})
    return {"message": "Plan created successfully", "plan": _dump(plan)}


@router.put("/plans/{plan_id}")
def admin_update_plan(plan_id: str, body: PlanUpdateRequest, actor: AdminActor = Depends(require_admin)):
    changes = {
        "name": body.name,
        "price": body.price,
        "billing_period": body.billing_period,
        "duration_days": body.duration,
        "target_role": body.target_role,
        "is_active": body.is_active,
        "features": body.features.model_dump(exclude_none=True) if body.features else None,
    }
    plan = update_plan(plan_id, changes)
    logger.info("[admin] plan updated", extra={"actor_id": actor.actor_id, "plan_id": plan_id})
    return {"message": "Plan updated successfully", "plan": _dump(plan)}


@router.delete("/plans/{plan_id}")
def admin_delete_plan(plan_id: str, actor: AdminActor = Depends(require_admin)):
    delete_plan(plan_id)
    logger.info("[admin] plan deleted", extra={"actor_id": actor.actor_id, "plan_id": plan_id})
    return {"message": "Plan deleted successfully"}


# ============================================================================
# Subscriptions
# ============================================================================

@router.get("/users")
def admin_list_subscriptions(
    status: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: AdminActor = Depends(require_admin),
):
    result = list_subscriptions(status=status, role=role, user_id=user_id, page=page, limit=limit)
    return {
        "subscriptions": [_dump(s) for s in result["subscriptions"]],
        "pagination": result["pagination"],
    }


@router.put("/users/{subscription_id}")
def admin_update_subscription(
    subscription_id: str,
    body: SubscriptionOverrideRequest,
    actor: AdminActor = Depends(require_admin),
):
    subscription = admin_override(
        subscription_id,
        status=body.status,
        auto_renew=body.auto_renew,
        end_date=body.end_date,
    )
    logger.info(
        "[admin] subscription override",
        extra={"actor_id": actor.actor_id, "subscription_id": subscription_id, "status": body.status},
    )
    return {"message": "Subscription updated successfully", "subscription": _dump(subscription)}


@router.get("/analytics")
def admin_analytics(days: int = Query(30, ge=1, le=365), actor: AdminActor = Depends(require_admin)):
    data = subscription_analytics(days=days)
    overview = data["overview"]
    return {
        "analytics": {
            "overview": {
                "totalSubscriptions": overview["total_subscriptions"],
                "activeSubscriptions": overview["active_subscriptions"],
                "expiredSubscriptions": overview["expired_subscriptions"],
                "cancelledSubscriptions": overview["cancelled_subscriptions"],
                "totalRevenue": overview["total_revenue"],
            },
            "subscriptionsByPlan": [
                {"planName": item["plan_name"], "count": item["count"]} for item in data["subscriptions_by_plan"]
            ],
            "subscriptionsByRole": data["subscriptions_by_role"],
            "recentSubscriptions": [_dump(s) for s in data["recent_subscriptions"]],
        }
    }


# ============================================================================
# Reconciliation
# ============================================================================

@router.get("/payments")
def admin_list_payments(
    status: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    limit: int = Query(50, ge=1, le=200),
    actor: AdminActor = Depends(require_admin),
):
    return {"payments": [_dump(p) for p in list_payments(status=status, user_id=user_id, limit=limit)]}


@router.post("/sweep")
def admin_run_sweep(actor: AdminActor = Depends(require_admin)):
    result = run_sweep()
    logger.info(
        "[admin] sweep triggered",
        extra={"actor_id": actor.actor_id, "expired_count": result.expired_count, "skipped": result.skipped},
    )
    return {
        "expiringCount": result.expiring_count,
        "expiredCount": result.expired_count,
        "skipped": result.skipped,
    }
