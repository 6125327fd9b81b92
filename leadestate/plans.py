"""
leadestate/plans.py

Plan catalog: the server-side source of truth for plan pricing, feature flags
and resource limits.

- Feature keys are a closed set (Feature); a plan definition that names any
  other key is rejected when it is built, not silently ignored at check time.
- Limits are non-negative integers or UNLIMITED (None).
- Plans live in the subscription_plans table, seeded idempotently at startup.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from leadestate.db import (
    Database,
    commit,
    execute_query,
    fetch_all,
    fetch_one,
    to_db_timestamp,
    utc_now,
)

FeatureValue = Union[bool, str]

# Sentinel for "no limit" on a resource
UNLIMITED = None

# String feature value meaning "tier exists but is switched off"
FEATURE_OFF = "none"


class Feature(str, Enum):
    """Optional capabilities a plan can unlock."""
    WHATSAPP = "whatsapp"
    ANALYTICS = "analytics"
    BRANDING = "branding"
    API_ACCESS = "api_access"
    GOOGLE_SHEETS = "google_sheets"
    WHITE_LABEL = "white_label"
    CUSTOM_DOMAIN = "custom_domain"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUAL = "semi_annual"
    ANNUAL = "annual"


CYCLE_MONTHS: Dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.SEMI_ANNUAL: 6,
    BillingCycle.ANNUAL: 12,
}


class ResourceType(str, Enum):
    """Countable tenant resources that plans put a cap on."""
    LEADS = "leads"
    USERS = "users"
    PROPERTIES = "properties"


class PlanNotFound(LookupError):
    """Raised when a plan name is not in the catalog (or not active)."""

    def __init__(self, name: str):
        super().__init__(f"Subscription plan '{name}' not found")
        self.name = name


class InvalidPlanDefinition(ValueError):
    """Raised when a plan definition uses unknown features or negative limits."""


# ============================================================================
# Plan Data Model
# ============================================================================

@dataclass(frozen=True)
class PlanLimits:
    max_leads: Optional[int] = UNLIMITED
    max_users: Optional[int] = UNLIMITED
    max_properties: Optional[int] = UNLIMITED

    def for_resource(self, resource_type: ResourceType) -> Optional[int]:
        return {
            ResourceType.LEADS: self.max_leads,
            ResourceType.USERS: self.max_users,
            ResourceType.PROPERTIES: self.max_properties,
        }[ResourceType(resource_type)]

    def by_resource(self) -> Dict[ResourceType, Optional[int]]:
        return {resource: self.for_resource(resource) for resource in ResourceType}


@dataclass(frozen=True)
class Plan:
    """
    One subscription tier.

    Build instances with define_plan() so feature keys and limits are validated.
    """
    name: str
    display_name: str
    description: str
    pricing: Dict[BillingCycle, Optional[float]]
    limits: PlanLimits
    features: Dict[Feature, FeatureValue] = field(default_factory=dict)
    sort_order: int = 0
    is_active: bool = True

    def price_for_cycle(self, cycle: Union[BillingCycle, str]) -> float:
        """Price for a billing cycle; cycles without a price fall back to monthly."""
        price = self.pricing.get(BillingCycle(cycle))
        if price is None:
            price = self.pricing.get(BillingCycle.MONTHLY) or 0.0
        return float(price)

    def savings_percentage(self, cycle: Union[BillingCycle, str]) -> int:
        """Whole-percent saving of a longer cycle versus paying monthly for the same months."""
        cycle = BillingCycle(cycle)
        if cycle == BillingCycle.MONTHLY:
            return 0
        full_price = self.price_for_cycle(BillingCycle.MONTHLY) * CYCLE_MONTHS[cycle]
        if full_price == 0:
            return 0
        return round((full_price - self.price_for_cycle(cycle)) / full_price * 100)

    def feature_value(self, feature: Feature) -> Optional[FeatureValue]:
        return self.features.get(feature)

    def limits_by_resource(self) -> Dict[ResourceType, Optional[int]]:
        return self.limits.by_resource()


def _validate_limit(name: str, value: Any) -> Optional[int]:
    if value is UNLIMITED:
        return UNLIMITED
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPlanDefinition(f"Limit {name} must be an integer or unlimited, got {value!r}")
    if value < 0:
        raise InvalidPlanDefinition(f"Limit {name} must not be negative, got {value}")
    return value


def _validate_features(features: Mapping[str, Any]) -> Dict[Feature, FeatureValue]:
    validated: Dict[Feature, FeatureValue] = {}
    for key, value in features.items():
        try:
            feature = Feature(key)
        except ValueError:
            raise InvalidPlanDefinition(f"Invalid feature: {key}")
        if not isinstance(value, (bool, str)):
            raise InvalidPlanDefinition(f"Feature {key} must be a boolean or tier string, got {value!r}")
        validated[feature] = value
    return validated


def define_plan(
    name: str,
    display_name: str,
    *,
    description: str = "",
    monthly_price: float,
    quarterly_price: Optional[float] = None,
    semi_annual_price: Optional[float] = None,
    annual_price: Optional[float] = None,
    max_leads: Optional[int] = UNLIMITED,
    max_users: Optional[int] = UNLIMITED,
    max_properties: Optional[int] = UNLIMITED,
    features: Optional[Mapping[str, Any]] = None,
    sort_order: int = 0,
    is_active: bool = True,
) -> Plan:
    """
    Build a validated Plan.

    Raises:
        InvalidPlanDefinition: Unknown feature key, non-boolean/non-string feature
            value, negative limit, or empty name
    """
    name = (name or "").strip().lower()
    if not name:
        raise InvalidPlanDefinition("Plan name must not be empty")

    limits = PlanLimits(
        max_leads=_validate_limit("max_leads", max_leads),
        max_users=_validate_limit("max_users", max_users),
        max_properties=_validate_limit("max_properties", max_properties),
    )

    return Plan(
        name=name,
        display_name=display_name,
        description=description,
        pricing={
            BillingCycle.MONTHLY: float(monthly_price),
            BillingCycle.QUARTERLY: None if quarterly_price is None else float(quarterly_price),
            BillingCycle.SEMI_ANNUAL: None if semi_annual_price is None else float(semi_annual_price),
            BillingCycle.ANNUAL: None if annual_price is None else float(annual_price),
        },
        limits=limits,
        features=_validate_features(features or {}),
        sort_order=sort_order,
        is_active=is_active,
    )


# ============================================================================
# Feature Resolution
# ============================================================================

def feature_enabled(value: Optional[FeatureValue]) -> bool:
    """
    A feature value grants access when it is True or a non-empty tier string
    other than "none". Missing values (None) and False never do.
    """
    if value is True:
        return True
    if isinstance(value, str):
        return value != "" and value != FEATURE_OFF
    return False


def has_feature(plan: Plan, feature: Feature) -> bool:
    """Check whether a plan unlocks a feature."""
    return feature_enabled(plan.features.get(feature))


def parse_feature_name(name: str) -> Optional[Feature]:
    """Map a feature name to Feature, or None when the name is not a known feature."""
    try:
        return Feature(name)
    except ValueError:
        return None


# ============================================================================
# Default Catalog
# ============================================================================

DEFAULT_PLANS: List[Plan] = [
    define_plan(
        "starter",
        "Starter Plan",
        description="Perfect for small agencies getting started",
        monthly_price=99.00,
        quarterly_price=267.00,
        semi_annual_price=495.00,
        annual_price=950.00,
        max_leads=1000,
        max_users=3,
        max_properties=100,
        features={
            "whatsapp": False,
            "analytics": "basic",
            "branding": "none",
            "api_access": False,
            "google_sheets": False,
            "white_label": False,
            "custom_domain": False,
        },
        sort_order=1,
    ),
    define_plan(
        "pro",
        "Pro Plan",
        description="Ideal for growing agencies with advanced needs",
        monthly_price=199.00,
        quarterly_price=537.00,
        semi_annual_price=995.00,
        annual_price=1900.00,
        max_leads=5000,
        max_users=10,
        max_properties=500,
        features={
            "whatsapp": True,
            "analytics": "advanced",
            "branding": "basic",
            "api_access": True,
            "google_sheets": True,
            "white_label": False,
            "custom_domain": False,
        },
        sort_order=2,
    ),
    define_plan(
        "agency",
        "Agency Plan",
        description="Complete white-label solution for large agencies",
        monthly_price=399.00,
        quarterly_price=1077.00,
        semi_annual_price=1995.00,
        annual_price=3800.00,
        max_leads=UNLIMITED,
        max_users=UNLIMITED,
        max_properties=UNLIMITED,
        features={
            "whatsapp": True,
            "analytics": "enterprise",
            "branding": "full",
            "api_access": True,
            "google_sheets": True,
            "white_label": True,
            "custom_domain": True,
        },
        sort_order=3,
    ),
]


# ============================================================================
# Catalog Store
# ============================================================================

_PLAN_COLUMNS = """
    name, display_name, description,
    monthly_price, quarterly_price, semi_annual_price, annual_price,
    max_leads, max_users, max_properties,
    features, is_active, sort_order
"""


def _optional_price(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def plan_from_row(row: Mapping[str, Any]) -> Plan:
    """Rebuild a Plan from a subscription_plans row (validates stored features)."""
    features = row.get("features") or "{}"
    if isinstance(features, str):
        features = json.loads(features)

    return define_plan(
        row["name"],
        row["display_name"],
        description=row.get("description") or "",
        monthly_price=float(row["monthly_price"]),
        quarterly_price=_optional_price(row.get("quarterly_price")),
        semi_annual_price=_optional_price(row.get("semi_annual_price")),
        annual_price=_optional_price(row.get("annual_price")),
        max_leads=row.get("max_leads"),
        max_users=row.get("max_users"),
        max_properties=row.get("max_properties"),
        features=features,
        sort_order=int(row.get("sort_order") or 0),
        is_active=bool(row.get("is_active", 1)),
    )


class PlanCatalog:
    """
    Read-only access to the plan catalog table.

    Store failures propagate as the driver's exceptions; callers that need to
    fail closed (the subscription repository, the gate) wrap them.
    """

    def __init__(self, database: Database, default_plan_name: str = "starter"):
        self.database = database
        self.default_plan_name = default_plan_name

    def seed_default_plans(self, plans: Optional[List[Plan]] = None) -> int:
        """
        Insert the default plans that are missing (idempotent).

        Existing rows are never overwritten: a plan name is immutable once
        subscriptions reference it.

        Returns:
            Number of plans inserted by this call
        """
        now = to_db_timestamp(utc_now())
        inserted = 0

        with self.database.connect() as conn:
            for plan in plans or DEFAULT_PLANS:
                result = execute_query(
                    conn,
                    """
                    INSERT INTO subscription_plans (
                        name, display_name, description,
                        monthly_price, quarterly_price, semi_annual_price, annual_price,
                        max_leads, max_users, max_properties,
                        features, is_active, sort_order, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (name) DO NOTHING
                    """,
                    (
                        plan.name,
                        plan.display_name,
                        plan.description,
                        plan.pricing[BillingCycle.MONTHLY],
                        plan.pricing[BillingCycle.QUARTERLY],
                        plan.pricing[BillingCycle.SEMI_ANNUAL],
                        plan.pricing[BillingCycle.ANNUAL],
                        plan.limits.max_leads,
                        plan.limits.max_users,
                        plan.limits.max_properties,
                        json.dumps({feature.value: value for feature, value in plan.features.items()}),
                        1 if plan.is_active else 0,
                        plan.sort_order,
                        now,
                        now,
                    ),
                )
                inserted += max(result.rowcount, 0)
            commit(conn)

        if inserted and self.database.settings.is_dev:
            print(f"[PLANS] Seeded {inserted} plan(s)")
        return inserted

    def get_plan(self, name: str) -> Plan:
        """
        Fetch an active plan by name.

        Raises:
            PlanNotFound: If no active plan has this name
        """
        with self.database.connect() as conn:
            row = fetch_one(
                conn,
                f"SELECT {_PLAN_COLUMNS} FROM subscription_plans WHERE name = ? AND is_active = 1",
                ((name or "").strip().lower(),),
            )
        if row is None:
            raise PlanNotFound(name)
        return plan_from_row(row)

    def list_active_plans(self) -> List[Plan]:
        """Active plans, cheapest first, ties broken by sort_order."""
        with self.database.connect() as conn:
            rows = fetch_all(
                conn,
                f"""
                SELECT {_PLAN_COLUMNS} FROM subscription_plans
                WHERE is_active = 1
                ORDER BY monthly_price ASC, sort_order ASC, name ASC
                """,
            )
        return [plan_from_row(row) for row in rows]

    def get_default_plan(self) -> Plan:
        """Entry-level plan assigned at trial signup."""
        return self.get_plan(self.default_plan_name)


def plan_to_dict(plan: Plan) -> Dict[str, Any]:
    """API representation of a plan (camelCase like the rest of the HTTP surface)."""
    return {
        "name": plan.name,
        "displayName": plan.display_name,
        "description": plan.description,
        "pricing": {
            "monthly": plan.pricing[BillingCycle.MONTHLY],
            "quarterly": plan.pricing[BillingCycle.QUARTERLY],
            "semiAnnual": plan.pricing[BillingCycle.SEMI_ANNUAL],
            "annual": plan.pricing[BillingCycle.ANNUAL],
        },
        "limits": {
            "maxLeads": plan.limits.max_leads,
            "maxUsers": plan.limits.max_users,
            "maxProperties": plan.limits.max_properties,
        },
        "features": {feature.value: value for feature, value in plan.features.items()},
        "savings": {
            "quarterly": plan.savings_percentage(BillingCycle.QUARTERLY),
            "semiAnnual": plan.savings_percentage(BillingCycle.SEMI_ANNUAL),
            "annual": plan.savings_percentage(BillingCycle.ANNUAL),
        },
    }
