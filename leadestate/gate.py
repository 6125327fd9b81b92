"""
leadestate/gate.py

Request gate: the per-request subscription pipeline.

    1. exempt route prefixes skip everything
    2. authenticate the caller (NO_TOKEN / INVALID_TOKEN / USER_NOT_FOUND)
    3. evaluate access (NO_SUBSCRIPTION / TRIAL_EXPIRED / SUBSCRIPTION_INACTIVE / PAYMENT_REQUIRED)
    4. optional feature requirement (FEATURE_NOT_AVAILABLE)
    5. optional usage limit for creation routes (USAGE_LIMIT_EXCEEDED)

Every denial is a GateError carrying remediation data; the FastAPI layer
(dependencies.py + errors.py) decides how it is written to the client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from leadestate.access import AccessDecision, AccessEvaluator, AccessReason
from leadestate.auth_context import Identity, authenticate
from leadestate.config import Settings
from leadestate.db import Database
from leadestate.errors import CODE_BY_REASON, ErrorCode, GateError
from leadestate.plans import Feature, ResourceType
from leadestate.usage import UsageCounter, UsageSnapshot

DENIAL_MESSAGES: Dict[AccessReason, str] = {
    AccessReason.NO_SUBSCRIPTION: "No subscription found for this agency",
    AccessReason.TRIAL_EXPIRED: "Your free trial has expired. Please upgrade to continue using LeadEstate.",
    AccessReason.SUBSCRIPTION_INACTIVE: "Your subscription is not active. Please upgrade to continue.",
    AccessReason.PAYMENT_REQUIRED: "Your last payment failed. Please update your payment method to continue.",
}


@dataclass
class SubscriptionContext:
    """What downstream handlers get once the gate has let a request through."""
    identity: Identity
    decision: AccessDecision
    usage: Dict[ResourceType, UsageSnapshot] = field(default_factory=dict)

    @property
    def tenant_id(self) -> str:
        return self.identity.tenant_id

    def subscription_block(self) -> Dict[str, Any]:
        return {
            "status": self.decision.status.value if self.decision.status else None,
            "planName": self.decision.plan_name,
            "features": {f.value: v for f, v in self.decision.resolved_features.items()},
            "limits": {r.value: v for r, v in self.decision.resolved_limits.items()},
        }

    def trial_block(self) -> Optional[Dict[str, Any]]:
        info = self.decision.trial_info
        if info is None:
            return None
        return {
            "daysRemaining": info.days_remaining,
            "isExpiringSoon": info.is_expiring_soon,
            "endDate": info.end_date.isoformat(),
        }


class SubscriptionGate:
    """
    Composition root for subscription enforcement.

    Args:
        settings: Exempt prefixes, upgrade URL, JWT settings
        database: Store used by the authentication step
        evaluator: AccessEvaluator
        usage_counter: UsageCounter
    """

    def __init__(self, settings: Settings, database: Database, evaluator: AccessEvaluator,
                 usage_counter: UsageCounter):
        self.settings = settings
        self.database = database
        self.evaluator = evaluator
        self.usage_counter = usage_counter

    def is_exempt(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.settings.exempt_route_prefixes)

    def authenticate(self, token: Optional[str]) -> Identity:
        return authenticate(token, self.settings, self.database)

    def authorize(self, identity: Identity, now: Optional[datetime] = None) -> SubscriptionContext:
        """
        Evaluate access for an authenticated caller.

        Raises:
            GateError: If the tenant is not authorized
            SubscriptionStoreError: If the subscription state cannot be determined
        """
        decision = self.evaluator.evaluate(identity.tenant_id, now)
        if not decision.authorized:
            raise self._access_denied(decision)
        return SubscriptionContext(identity=identity, decision=decision)

    def _access_denied(self, decision: AccessDecision) -> GateError:
        reason = decision.reason or AccessReason.SUBSCRIPTION_INACTIVE
        data: Dict[str, Any] = {"upgradeUrl": self.settings.upgrade_url}

        if reason == AccessReason.TRIAL_EXPIRED and decision.trial_end_date:
            data["trialEndDate"] = decision.trial_end_date.isoformat()
        if decision.status is not None and reason != AccessReason.TRIAL_EXPIRED:
            data["status"] = decision.status.value
        if decision.plan_name:
            data["currentPlan"] = decision.plan_name

        return GateError(CODE_BY_REASON[reason], DENIAL_MESSAGES[reason], data)

    def require_feature(self, context: SubscriptionContext, feature: Feature) -> None:
        """
        Raises:
            GateError(FEATURE_NOT_AVAILABLE): If the tenant's plan does not unlock the feature
        """
        if context.decision.has_feature(feature):
            return

        plan_name = context.decision.plan_name
        if self.settings.is_dev:
            print(f"[GATE] Feature '{feature.value}' blocked for tenant={context.tenant_id} (plan={plan_name})")
        raise GateError(
            ErrorCode.FEATURE_NOT_AVAILABLE,
            f"This feature requires a higher subscription plan. Current plan: {plan_name}",
            {
                "feature": feature.value,
                "currentPlan": plan_name,
                "upgradeUrl": self.settings.upgrade_url,
            },
        )

    def enforce_usage_limit(self, context: SubscriptionContext, resource_type: ResourceType) -> UsageSnapshot:
        """
        Check the tenant may create one more resource of this type and record
        the snapshot on the context.

        Raises:
            GateError(USAGE_LIMIT_EXCEEDED): If the tenant is at or over the limit
            SubscriptionStoreError: If usage cannot be counted
        """
        resource_type = ResourceType(resource_type)
        check = self.usage_counter.check_limit(
            context.tenant_id, resource_type, context.decision.resolved_limits
        )
        if not check.within_limit:
            usage = check.usage
            print(f"[GATE] Usage limit reached for tenant={context.tenant_id}: "
                  f"{resource_type.value} {usage.current_count}/{usage.max_allowed}")
            raise GateError(
                ErrorCode.USAGE_LIMIT_EXCEEDED,
                f"You have reached your {resource_type.value} limit ({usage.max_allowed}). "
                f"Please upgrade your plan.",
                {
                    "resourceType": resource_type.value,
                    "currentCount": usage.current_count,
                    "maxAllowed": usage.max_allowed,
                    "currentPlan": context.decision.plan_name,
                    "upgradeUrl": self.settings.upgrade_url,
                },
            )

        context.usage[resource_type] = check.usage
        return check.usage
