"""
leadestate/routes_subscription.py

Subscription self-service endpoints.

/plans, /status and /upgrade are exempt from the app-wide gate so that a tenant
whose trial has lapsed can still see what happened and pay; they authenticate
the caller themselves. /cancel and /billing-history go through the gate.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from leadestate.auth_context import Identity
from leadestate.dependencies import require_identity, require_subscription_context
from leadestate.db import STORE_ERRORS
from leadestate.errors import ErrorCode, GateError
from leadestate.gate import SubscriptionContext
from leadestate.models import CancelRequest, UpgradeRequest
from leadestate.plans import PlanNotFound, plan_to_dict
from leadestate.subscriptions import NoActiveSubscription, subscription_to_dict

router = APIRouter(
    prefix="/api/subscription",
    tags=["subscription"],
)


def _require_owner(identity: Identity) -> None:
    if not identity.is_owner:
        raise HTTPException(status_code=403, detail="Only the agency owner can manage the subscription")


@router.get("/plans")
def list_plans(request: Request) -> Dict[str, Any]:
    """Active plans, cheapest first. Public."""
    try:
        plans = request.app.state.catalog.list_active_plans()
    except STORE_ERRORS as e:
        print(f"[PLANS] Failed to load plans: {e}")
        raise HTTPException(status_code=500, detail="Failed to get subscription plans") from e
    return {"success": True, "data": [plan_to_dict(plan) for plan in plans]}


@router.get("/status")
def subscription_status(request: Request, identity: Identity = Depends(require_identity)) -> Dict[str, Any]:
    """
    Current subscription, plan, usage and trial block for the caller's agency.

    Works for lapsed tenants too: the access verdict is reported in the
    "access" block instead of being raised.

    Raises:
        GateError(NO_SUBSCRIPTION): The agency has never had a subscription
    """
    state = request.app.state
    decision = state.evaluator.evaluate(identity.tenant_id)

    subscription = state.subscriptions.find_latest_subscription(identity.tenant_id)
    if subscription is None:
        raise GateError(ErrorCode.NO_SUBSCRIPTION, "No active subscription found")

    plan = state.evaluator.resolve_plan(subscription)
    usage = state.usage.usage_summary(identity.tenant_id, plan.limits_by_resource())

    trial: Optional[Dict[str, Any]] = None
    if decision.trial_info is not None:
        trial = {
            "daysRemaining": decision.trial_info.days_remaining,
            "endDate": decision.trial_info.end_date.isoformat(),
            "isExpired": False,
            "isExpiringSoon": decision.trial_info.is_expiring_soon,
        }
    elif not decision.authorized and subscription.trial_end_date and not subscription.trial_converted:
        trial = {
            "daysRemaining": 0,
            "endDate": subscription.trial_end_date.isoformat(),
            "isExpired": True,
            "isExpiringSoon": False,
        }

    return {
        "success": True,
        "data": {
            "subscription": {**subscription_to_dict(subscription), "displayName": plan.display_name},
            "plan": plan_to_dict(plan),
            "access": {
                "authorized": decision.authorized,
                "reason": decision.reason.value if decision.reason else None,
                "inGracePeriod": decision.in_grace_period,
                "upgradeUrl": state.settings.upgrade_url,
            },
            "usage": {resource.value: snapshot.to_dict() for resource, snapshot in usage.items()},
            "trial": trial,
        },
    }


@router.post("/upgrade")
def upgrade_subscription(
    req: UpgradeRequest,
    request: Request,
    identity: Identity = Depends(require_identity),
) -> Dict[str, Any]:
    """
    Move the agency onto a paid plan.

    Payment collection is handled by the payment provider integration; this
    endpoint records the plan change and the billing row.

    Raises:
        HTTPException(403): Caller is not the agency owner
        HTTPException(404): Unknown plan
    """
    _require_owner(identity)
    state = request.app.state

    try:
        subscription = state.subscriptions.activate_plan(
            identity.tenant_id,
            req.plan_name,
            req.billing_cycle,
            user_id=identity.user_id,
        )
    except PlanNotFound as e:
        raise HTTPException(status_code=404, detail="Subscription plan not found") from e

    return {
        "success": True,
        "message": "Subscription upgraded successfully",
        "data": {
            "subscription": subscription_to_dict(subscription),
            "nextBillingDate": subscription.next_billing_date.isoformat(),
        },
    }


@router.post("/cancel")
def cancel_subscription(
    req: CancelRequest,
    request: Request,
    ctx: SubscriptionContext = Depends(require_subscription_context),
) -> Dict[str, Any]:
    _require_owner(ctx.identity)
    try:
        subscription = request.app.state.subscriptions.cancel_subscription(ctx.tenant_id, req.reason)
    except NoActiveSubscription as e:
        raise HTTPException(status_code=404, detail="No active subscription found to cancel") from e

    return {
        "success": True,
        "message": "Subscription cancelled successfully",
        "data": {"subscription": subscription_to_dict(subscription)},
    }


@router.get("/billing-history")
def billing_history(
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: SubscriptionContext = Depends(require_subscription_context),
) -> Dict[str, Any]:
    rows, total = request.app.state.subscriptions.billing_history(ctx.tenant_id, limit, offset)
    return {
        "success": True,
        "data": {
            "history": [
                {
                    "id": row["id"],
                    "type": row["transaction_type"],
                    "amount": float(row["amount"] or 0),
                    "currency": row["currency"],
                    "status": row["status"],
                    "description": row["description"],
                    "billingPeriod": {
                        "start": row["billing_period_start"],
                        "end": row["billing_period_end"],
                    },
                    "createdAt": row["created_at"],
                }
                for row in rows
            ],
            "pagination": {"total": total, "limit": limit, "offset": offset},
        },
    }
