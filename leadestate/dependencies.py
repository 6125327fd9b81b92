"""
leadestate/dependencies.py

Reusable FastAPI dependencies for subscription enforcement.

The gate runs once per request: the identity and the SubscriptionContext are
memoized on request.state, so the app-wide enforce_subscription dependency and
any route-level require_feature / require_usage_limit guards share one
evaluation regardless of the order FastAPI resolves them in.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials

from leadestate.auth_context import Identity, security
from leadestate.gate import SubscriptionContext, SubscriptionGate
from leadestate.plans import Feature, ResourceType


def get_gate(request: Request) -> SubscriptionGate:
    return request.app.state.gate


def _identity(
    request: Request,
    gate: SubscriptionGate,
    credentials: Optional[HTTPAuthorizationCredentials],
) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        identity = gate.authenticate(credentials.credentials if credentials else None)
        request.state.identity = identity
    return identity


def _subscription_context(
    request: Request,
    gate: SubscriptionGate,
    credentials: Optional[HTTPAuthorizationCredentials],
) -> SubscriptionContext:
    context = getattr(request.state, "subscription", None)
    if context is None:
        context = gate.authorize(_identity(request, gate, credentials))
        request.state.subscription = context
    return context


def require_identity(
    request: Request,
    gate: SubscriptionGate = Depends(get_gate),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Identity:
    """Authenticated caller only; no subscription check (exempt routes use this)."""
    return _identity(request, gate, credentials)


def require_subscription_context(
    request: Request,
    gate: SubscriptionGate = Depends(get_gate),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> SubscriptionContext:
    """
    Authenticated caller whose tenant currently has access.

    Usage in routes:
        @router.get("/api/leads")
        def list_leads(ctx: SubscriptionContext = Depends(require_subscription_context)):
            ...

    Raises:
        GateError: Authentication or access denial
        SubscriptionStoreError: If the subscription state cannot be determined
    """
    return _subscription_context(request, gate, credentials)


def enforce_subscription(
    request: Request,
    gate: SubscriptionGate = Depends(get_gate),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[SubscriptionContext]:
    """App-wide dependency: every non-exempt route goes through the gate."""
    if gate.is_exempt(request.url.path):
        return None
    return _subscription_context(request, gate, credentials)


def require_feature(feature: Feature) -> Callable:
    """
    FastAPI dependency factory for feature-gated routes.

    Usage in routes:
        @router.post("/messages", dependencies=[Depends(require_feature(Feature.WHATSAPP))])

    Args:
        feature: The Feature the tenant's plan must unlock

    Returns:
        A dependency function that enforces the feature and returns the SubscriptionContext

    Raises:
        GateError(FEATURE_NOT_AVAILABLE): If the plan does not unlock the feature
    """
    feature = Feature(feature)

    def _check_feature(
        request: Request,
        gate: SubscriptionGate = Depends(get_gate),
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    ) -> SubscriptionContext:
        context = _subscription_context(request, gate, credentials)
        gate.require_feature(context, feature)
        return context

    return _check_feature


def require_usage_limit(resource_type: ResourceType) -> Callable:
    """
    FastAPI dependency factory for resource creation routes.

    The UsageSnapshot that allowed the request is attached to
    SubscriptionContext.usage for the handler to echo back.

    Raises:
        GateError(USAGE_LIMIT_EXCEEDED): If the tenant is at its limit
    """
    resource_type = ResourceType(resource_type)

    def _check_usage(
        request: Request,
        gate: SubscriptionGate = Depends(get_gate),
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    ) -> SubscriptionContext:
        context = _subscription_context(request, gate, credentials)
        gate.enforce_usage_limit(context, resource_type)
        return context

    return _check_usage
