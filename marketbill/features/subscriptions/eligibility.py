"""
Purchase eligibility shared by intent issuance and free-plan activation.

Checks run in a fixed order and each denial carries its own error code, so
clients can tell "verify your account" apart from "wrong plan for this role".
"""
import logging
from dataclasses import dataclass
from typing import Optional

from marketbill.core.errors import EligibilityError, NotFoundError
from marketbill.features.directory.service import SellerAccount, UserDirectory, get_user_directory
from marketbill.features.plans.service import get_plan, validate_role
from marketbill.models.plan import Plan


logger = logging.getLogger("marketbill.eligibility")


@dataclass(frozen=True)
class PurchaseContext:
    user: SellerAccount
    plan: Plan
    role: str


def _deny(code: str, message: str, user_id: str, role: str) -> EligibilityError:
    logger.info("[eligibility] DENY", extra={"user_id": user_id, "role": role, "reason": code})
    return EligibilityError(message, code=code)


def check_seller(user_id: str, role: str, directory: Optional[UserDirectory] = None) -> SellerAccount:
    """Role membership and account standing. Raises on the first failed check."""
    validate_role(role)

    user = (directory or get_user_directory()).get_user(user_id)
    if not user:
        raise NotFoundError("User not found", code="user_not_found")

    if role not in user.roles:
        raise _deny("role_missing", "You don't have the required role", user_id, role)

    if user.verification_status != "approved":
        raise _deny("not_verified", "Only verified sellers can purchase subscriptions", user_id, role)

    if user.account_status != "active":
        raise _deny("account_suspended", "Suspended or banned users cannot subscribe", user_id, role)

    if role in user.disabled_roles:
        raise _deny("role_disabled", "This role has been disabled", user_id, role)

    return user


def check_purchase(
    user_id: str,
    plan_id: str,
    role: str,
    directory: Optional[UserDirectory] = None,
) -> PurchaseContext:
    """Full purchase eligibility: seller checks, then plan existence, activity and role fit."""
    user = check_seller(user_id, role, directory=directory)

    plan = get_plan(plan_id) if plan_id else None
    if not plan:
        raise NotFoundError("Plan not found", code="plan_not_found")

    if not plan.is_active:
        raise _deny("plan_inactive", "Plan is not active", user_id, role)

    if not plan.available_for(role):
        raise _deny("plan_role_mismatch", "Plan is not available for this role", user_id, role)

    return PurchaseContext(user=user, plan=plan, role=role)
