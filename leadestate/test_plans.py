"""
leadestate/test_plans.py

Tests for the plan catalog.

Tests verify:
1. Plan definitions reject unknown features and negative limits
2. Feature resolution (true / tier string / "none" / missing) is closed-world
3. Seeding is idempotent and never overwrites existing rows
4. Active plans are ordered by price
"""

import json

import pytest

from leadestate.db import commit, execute_query
from leadestate.plans import (
    DEFAULT_PLANS,
    UNLIMITED,
    BillingCycle,
    Feature,
    InvalidPlanDefinition,
    PlanNotFound,
    ResourceType,
    define_plan,
    feature_enabled,
    has_feature,
    parse_feature_name,
    plan_to_dict,
)


def _plan(name):
    return next(p for p in DEFAULT_PLANS if p.name == name)


# ============================================================================
# Plan definition
# ============================================================================

def test_unknown_feature_rejected_at_definition():
    with pytest.raises(InvalidPlanDefinition, match="sms"):
        define_plan("custom", "Custom", monthly_price=10, features={"sms": True})


def test_negative_limit_rejected():
    with pytest.raises(InvalidPlanDefinition):
        define_plan("custom", "Custom", monthly_price=10, max_leads=-1)


def test_non_integer_limit_rejected():
    with pytest.raises(InvalidPlanDefinition):
        define_plan("custom", "Custom", monthly_price=10, max_users=True)


def test_feature_value_type_checked():
    with pytest.raises(InvalidPlanDefinition):
        define_plan("custom", "Custom", monthly_price=10, features={"whatsapp": 1})


def test_starter_limits():
    starter = _plan("starter")
    assert starter.limits_by_resource() == {
        ResourceType.LEADS: 1000,
        ResourceType.USERS: 3,
        ResourceType.PROPERTIES: 100,
    }


def test_agency_plan_unlimited():
    agency = _plan("agency")
    assert all(limit is UNLIMITED for limit in agency.limits_by_resource().values())


# ============================================================================
# Feature resolution
# ============================================================================

def test_feature_values():
    assert feature_enabled(True) is True
    assert feature_enabled("basic") is True
    assert feature_enabled("none") is False
    assert feature_enabled("") is False
    assert feature_enabled(False) is False
    assert feature_enabled(None) is False


def test_starter_features():
    starter = _plan("starter")
    assert has_feature(starter, Feature.WHATSAPP) is False
    assert has_feature(starter, Feature.ANALYTICS) is True
    assert has_feature(starter, Feature.BRANDING) is False


def test_agency_has_every_feature():
    agency = _plan("agency")
    assert all(has_feature(agency, feature) for feature in Feature)


def test_has_feature_deterministic():
    pro = _plan("pro")
    first = [has_feature(pro, feature) for feature in Feature]
    for _ in range(3):
        assert [has_feature(pro, feature) for feature in reversed(Feature)][::-1] == first


def test_unknown_feature_name():
    assert parse_feature_name("sms") is None
    assert parse_feature_name("whatsapp") is Feature.WHATSAPP


# ============================================================================
# Pricing
# ============================================================================

def test_savings_percentage():
    starter = _plan("starter")
    assert starter.savings_percentage(BillingCycle.MONTHLY) == 0
    assert starter.savings_percentage(BillingCycle.QUARTERLY) == 10
    assert starter.savings_percentage(BillingCycle.SEMI_ANNUAL) == 17
    assert starter.savings_percentage(BillingCycle.ANNUAL) == 20


def test_price_falls_back_to_monthly():
    plan = define_plan("custom", "Custom", monthly_price=49)
    assert plan.price_for_cycle("annual") == 49.0


def test_plan_to_dict_shape():
    data = plan_to_dict(_plan("pro"))
    assert data["limits"] == {"maxLeads": 5000, "maxUsers": 10, "maxProperties": 500}
    assert data["features"]["whatsapp"] is True
    assert data["pricing"]["semiAnnual"] == 995.0


# ============================================================================
# Catalog store
# ============================================================================

def test_seed_is_idempotent(catalog):
    assert catalog.seed_default_plans() == 0
    assert [p.name for p in catalog.list_active_plans()] == ["starter", "pro", "agency"]


def test_seed_does_not_overwrite(database, catalog):
    with database.connect() as conn:
        execute_query(conn, "UPDATE subscription_plans SET monthly_price = 89 WHERE name = 'starter'")
        commit(conn)

    catalog.seed_default_plans()
    assert catalog.get_plan("starter").price_for_cycle(BillingCycle.MONTHLY) == 89.0


def test_get_plan(catalog):
    pro = catalog.get_plan("Pro")
    assert pro.name == "pro"
    assert pro.features[Feature.ANALYTICS] == "advanced"
    assert catalog.get_default_plan().name == "starter"


def test_get_unknown_plan(catalog):
    with pytest.raises(PlanNotFound) as exc:
        catalog.get_plan("enterprise")
    assert exc.value.name == "enterprise"


def test_inactive_plan_hidden(database, catalog):
    with database.connect() as conn:
        execute_query(conn, "UPDATE subscription_plans SET is_active = 0 WHERE name = 'pro'")
        commit(conn)

    assert [p.name for p in catalog.list_active_plans()] == ["starter", "agency"]
    with pytest.raises(PlanNotFound):
        catalog.get_plan("pro")


def test_stored_unknown_feature_rejected(database, catalog):
    with database.connect() as conn:
        execute_query(
            conn,
            "UPDATE subscription_plans SET features = ? WHERE name = 'starter'",
            (json.dumps({"whatsapp": False, "sms": True}),),
        )
        commit(conn)

    with pytest.raises(InvalidPlanDefinition):
        catalog.get_plan("starter")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
