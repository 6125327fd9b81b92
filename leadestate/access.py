"""
leadestate/access.py

Access evaluation: the subscription state machine.

Given a tenant and the current time, decide whether the tenant may use the
system at all, which features are unlocked and which resource limits apply.

    trial   -> granted while now <= trial_end_date, otherwise persisted as expired
    active  -> granted
    past_due -> denied (PAYMENT_REQUIRED) unless inside the configured grace window
    expired / cancelled / suspended -> denied (SUBSCRIPTION_INACTIVE)

Evaluation never falls back to "authorized" when the subscription state cannot
be read: store failures propagate as SubscriptionStoreError.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field

from leadestate.config import Settings
from leadestate.db import STORE_ERRORS, utc_now
from leadestate.plans import (
    Feature,
    FeatureValue,
    Plan,
    PlanCatalog,
    PlanNotFound,
    ResourceType,
    feature_enabled,
    parse_feature_name,
)
from leadestate.subscriptions import (
    Subscription,
    SubscriptionRepository,
    SubscriptionStatus,
    SubscriptionStoreError,
    days_until,
)


class AccessReason(str, Enum):
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"


class TrialInfo(BaseModel):
    days_remaining: int
    is_expiring_soon: bool
    end_date: datetime


class AccessDecision(BaseModel):
    """
    Verdict of one evaluation plus the entitlements it resolved.

    Denied decisions carry no features and no limits; the identifying fields
    (status, plan_name, trial_end_date) are still filled in where known so the
    caller can build remediation data.
    """
    authorized: bool
    reason: Optional[AccessReason] = None
    tenant_id: str
    status: Optional[SubscriptionStatus] = None
    plan_name: Optional[str] = None
    subscription_id: Optional[int] = None
    resolved_features: Dict[Feature, Union[bool, str]] = Field(default_factory=dict)
    resolved_limits: Dict[ResourceType, Optional[int]] = Field(default_factory=dict)
    trial_info: Optional[TrialInfo] = None
    trial_end_date: Optional[datetime] = None
    in_grace_period: bool = False

    def has_feature(self, feature: Union[Feature, str]) -> bool:
        """Closed-world check: unknown feature names are never available."""
        if not isinstance(feature, Feature):
            feature = parse_feature_name(feature)
            if feature is None:
                return False
        return feature_enabled(self.resolved_features.get(feature))

    def limit_for(self, resource_type: Union[ResourceType, str]) -> Optional[int]:
        """
        Resolved limit for a resource (None = unlimited).

        A resource with no resolved limit (e.g. on a denied decision) allows nothing.
        """
        resource_type = ResourceType(resource_type)
        if resource_type not in self.resolved_limits:
            return 0
        return self.resolved_limits[resource_type]


# ============================================================================
# Evaluator
# ============================================================================

class AccessEvaluator:
    """
    Single implementation of subscription access rules.

    Args:
        subscriptions: Data-access strategy for loading/transitioning subscriptions
        catalog: Plan catalog for resolving features and limits
        settings: Trial/grace policy (expiring_soon_days, past_due_grace_days)
    """

    def __init__(self, subscriptions: SubscriptionRepository, catalog: PlanCatalog, settings: Settings):
        self.subscriptions = subscriptions
        self.catalog = catalog
        self.settings = settings

    def _load_subscription(self, tenant_id: str) -> Optional[Subscription]:
        # Current subscription first; otherwise the latest lapsed one so the
        # tenant is reported as inactive rather than unprovisioned.
        subscription = self.subscriptions.find_active_subscription(tenant_id)
        if subscription is None:
            subscription = self.subscriptions.find_latest_subscription(tenant_id)
        return subscription

    def resolve_plan(self, subscription: Subscription) -> Plan:
        """Plan a subscription refers to, or the default plan if it is no longer in the catalog."""
        try:
            try:
                return self.catalog.get_plan(subscription.plan_name)
            except PlanNotFound:
                print(f"[ACCESS] WARNING: subscription {subscription.id} references unknown plan "
                      f"'{subscription.plan_name}', using default plan")
                return self.catalog.get_default_plan()
        except STORE_ERRORS as e:
            print(f"[ACCESS] Plan lookup failed for subscription {subscription.id}: {e}")
            raise SubscriptionStoreError("Failed to load subscription plan") from e

    def _grant(self, subscription: Subscription, **extra) -> AccessDecision:
        plan = self.resolve_plan(subscription)
        return AccessDecision(
            authorized=True,
            tenant_id=subscription.tenant_id,
            status=subscription.status,
            plan_name=plan.name,
            subscription_id=subscription.id,
            resolved_features={feature: plan.features.get(feature, False) for feature in Feature},
            resolved_limits=plan.limits_by_resource(),
            **extra,
        )

    def _deny(self, tenant_id: str, reason: AccessReason, subscription: Optional[Subscription] = None,
              **extra) -> AccessDecision:
        print(f"[ACCESS] Denied tenant={tenant_id}: {reason.value}"
              + (f" (status={subscription.status.value})" if subscription else ""))
        return AccessDecision(
            authorized=False,
            reason=reason,
            tenant_id=tenant_id,
            status=subscription.status if subscription else None,
            plan_name=subscription.plan_name if subscription else None,
            subscription_id=subscription.id if subscription else None,
            **extra,
        )

    def trial_info(self, trial_end_date: datetime, now: datetime) -> TrialInfo:
        days_remaining = days_until(trial_end_date, now)
        return TrialInfo(
            days_remaining=days_remaining,
            is_expiring_soon=days_remaining <= self.settings.expiring_soon_days,
            end_date=trial_end_date,
        )

    def evaluate(self, tenant_id: str, now: Optional[datetime] = None) -> AccessDecision:
        """
        Decide whether a tenant may use the system right now.

        A lapsed trial is persisted as expired before the decision is returned
        (conditional update, safe under concurrent evaluations). The first call
        after the lapse reports TRIAL_EXPIRED; later calls see the stored
        expired status and report SUBSCRIPTION_INACTIVE.

        Args:
            tenant_id: Agency id
            now: Evaluation time (defaults to current UTC time)

        Returns:
            AccessDecision

        Raises:
            SubscriptionStoreError: If the subscription state cannot be read or written
        """
        now = now or utc_now()
        subscription = self._load_subscription(tenant_id)

        if subscription is None:
            return self._deny(tenant_id, AccessReason.NO_SUBSCRIPTION)

        status = subscription.status

        if status == SubscriptionStatus.TRIAL:
            trial_end = subscription.trial_end_date
            if trial_end is None:
                print(f"[ACCESS] WARNING: trial subscription {subscription.id} has no trial end date")
                return self._deny(tenant_id, AccessReason.SUBSCRIPTION_INACTIVE, subscription)

            if now > trial_end:
                self.subscriptions.transition_to_expired(subscription.id, now)
                return self._deny(
                    tenant_id,
                    AccessReason.TRIAL_EXPIRED,
                    subscription,
                    trial_end_date=trial_end,
                )

            decision = self._grant(
                subscription,
                trial_info=self.trial_info(trial_end, now),
                trial_end_date=trial_end,
            )
            if self.settings.is_dev:
                print(f"[ACCESS] Trial access tenant={tenant_id}, "
                      f"days_remaining={decision.trial_info.days_remaining}")
            return decision

        if status == SubscriptionStatus.ACTIVE:
            decision = self._grant(subscription)
            if self.settings.is_dev:
                print(f"[ACCESS] Active access tenant={tenant_id}, plan={decision.plan_name}")
            return decision

        if status == SubscriptionStatus.PAST_DUE:
            grace_days = self.settings.past_due_grace_days
            if grace_days > 0 and now <= subscription.current_period_end + timedelta(days=grace_days):
                print(f"[ACCESS] Past-due tenant={tenant_id} inside {grace_days}-day grace period")
                return self._grant(subscription, in_grace_period=True)
            return self._deny(tenant_id, AccessReason.PAYMENT_REQUIRED, subscription)

        # expired / cancelled / suspended
        return self._deny(tenant_id, AccessReason.SUBSCRIPTION_INACTIVE, subscription)


def feature_value(decision: AccessDecision, feature: Feature) -> Optional[FeatureValue]:
    """Raw resolved value of a feature (e.g. the analytics tier string)."""
    return decision.resolved_features.get(feature)
