"""
leadestate/test_access.py

Tests for the access evaluator state machine.

Tests verify:
1. Fresh trial is authorized with 14 days remaining
2. Lapsed trial -> TRIAL_EXPIRED once, then SUBSCRIPTION_INACTIVE (persisted expiry)
3. Active subscriptions ignore trial dates
4. past_due is PAYMENT_REQUIRED unless a grace window is configured
5. Decisions survive a JSON round-trip
6. Store failures fail closed
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from leadestate.access import AccessDecision, AccessEvaluator, AccessReason
from leadestate.config import Settings
from leadestate.conftest import NOW, set_subscription_fields
from leadestate.db import Database
from leadestate.plans import Feature, PlanCatalog, ResourceType
from leadestate.subscriptions import SubscriptionRepository, SubscriptionStatus, SubscriptionStoreError


# ============================================================================
# Trial
# ============================================================================

def test_signup_trial_authorized(repository, evaluator, agency):
    repository.create_trial(agency, now=NOW)

    decision = evaluator.evaluate(agency, NOW)

    assert decision.authorized is True
    assert decision.reason is None
    assert decision.status == SubscriptionStatus.TRIAL
    assert decision.plan_name == "starter"
    assert decision.trial_info.days_remaining == 14
    assert decision.trial_info.is_expiring_soon is False
    assert decision.resolved_limits[ResourceType.LEADS] == 1000
    assert decision.has_feature(Feature.ANALYTICS) is True
    assert decision.has_feature(Feature.WHATSAPP) is False


def test_expired_trial_then_inactive(repository, evaluator, agency):
    # Trial ended 15 days ago
    sub = repository.create_trial(agency, now=NOW - timedelta(days=29))

    first = evaluator.evaluate(agency, NOW)
    assert first.authorized is False
    assert first.reason == AccessReason.TRIAL_EXPIRED
    assert first.trial_end_date == sub.trial_end_date
    assert first.resolved_features == {}

    assert repository.get_subscription(sub.id).status == SubscriptionStatus.EXPIRED

    second = evaluator.evaluate(agency, NOW)
    assert second.authorized is False
    assert second.reason == AccessReason.SUBSCRIPTION_INACTIVE
    assert second.status == SubscriptionStatus.EXPIRED


def test_trial_end_boundary(repository, evaluator, agency):
    sub = repository.create_trial(agency, now=NOW)
    end = sub.trial_end_date

    at_end = evaluator.evaluate(agency, end)
    assert at_end.authorized is True
    assert at_end.trial_info.days_remaining == 0
    assert at_end.trial_info.is_expiring_soon is True

    after = evaluator.evaluate(agency, end + timedelta(microseconds=1))
    assert after.reason == AccessReason.TRIAL_EXPIRED


@pytest.mark.parametrize(
    "remaining, expected_days, expiring_soon",
    [
        (timedelta(days=4), 4, False),
        (timedelta(days=3), 3, True),
        (timedelta(days=2, hours=1), 3, True),
        (timedelta(hours=1), 1, True),
    ],
)
def test_trial_days_remaining(repository, evaluator, agency, remaining, expected_days, expiring_soon):
    sub = repository.create_trial(agency, now=NOW)
    now = sub.trial_end_date - remaining

    info = evaluator.evaluate(agency, now).trial_info
    assert info.days_remaining == expected_days
    assert info.is_expiring_soon is expiring_soon


def test_trial_without_end_date_denied(database, repository, evaluator, agency):
    sub = repository.create_trial(agency, now=NOW)
    set_subscription_fields(database, sub.id, trial_end_date=None)

    decision = evaluator.evaluate(agency, NOW)
    assert decision.authorized is False
    assert decision.reason == AccessReason.SUBSCRIPTION_INACTIVE


def test_concurrent_evaluations_after_lapse(repository, evaluator, agency):
    sub = repository.create_trial(agency, now=NOW - timedelta(days=20))

    with ThreadPoolExecutor(max_workers=8) as pool:
        decisions = list(pool.map(lambda _: evaluator.evaluate(agency, NOW), range(8)))

    assert all(d.authorized is False for d in decisions)
    reasons = {d.reason for d in decisions}
    assert AccessReason.TRIAL_EXPIRED in reasons
    assert reasons <= {AccessReason.TRIAL_EXPIRED, AccessReason.SUBSCRIPTION_INACTIVE}
    assert repository.get_subscription(sub.id).status == SubscriptionStatus.EXPIRED


# ============================================================================
# Other statuses
# ============================================================================

def test_no_subscription(evaluator, agency):
    decision = evaluator.evaluate(agency, NOW)
    assert decision.authorized is False
    assert decision.reason == AccessReason.NO_SUBSCRIPTION


def test_active_ignores_trial_dates(repository, evaluator, agency):
    repository.create_trial(agency, now=NOW - timedelta(days=60))
    repository.activate_plan(agency, "pro", now=NOW - timedelta(days=50))

    decision = evaluator.evaluate(agency, NOW + timedelta(days=365))
    assert decision.authorized is True
    assert decision.status == SubscriptionStatus.ACTIVE
    assert decision.trial_info is None
    assert decision.has_feature(Feature.WHATSAPP) is True
    assert decision.limit_for(ResourceType.LEADS) == 5000


@pytest.mark.parametrize("status", ["cancelled", "suspended", "expired"])
def test_inactive_statuses(database, repository, evaluator, agency, status):
    sub = repository.create_trial(agency, now=NOW)
    set_subscription_fields(database, sub.id, status=status, is_trial=0)

    decision = evaluator.evaluate(agency, NOW)
    assert decision.authorized is False
    assert decision.reason == AccessReason.SUBSCRIPTION_INACTIVE
    assert decision.status == SubscriptionStatus(status)
    assert decision.limit_for(ResourceType.LEADS) == 0


def test_past_due_requires_payment(database, repository, evaluator, agency):
    sub = repository.activate_plan(agency, "pro", now=NOW)
    set_subscription_fields(database, sub.id, status="past_due")

    decision = evaluator.evaluate(agency, NOW)
    assert decision.authorized is False
    assert decision.reason == AccessReason.PAYMENT_REQUIRED


def test_past_due_grace_period(database, repository, catalog, agency):
    settings = Settings(env="test", database_path=database.settings.database_path, past_due_grace_days=7)
    evaluator = AccessEvaluator(repository, catalog, settings)
    sub = repository.activate_plan(agency, "pro", now=NOW)
    set_subscription_fields(database, sub.id, status="past_due")

    inside = evaluator.evaluate(agency, sub.current_period_end + timedelta(days=6))
    assert inside.authorized is True
    assert inside.in_grace_period is True

    outside = evaluator.evaluate(agency, sub.current_period_end + timedelta(days=8))
    assert outside.reason == AccessReason.PAYMENT_REQUIRED


def test_unknown_plan_falls_back_to_default(database, repository, evaluator, agency):
    sub = repository.activate_plan(agency, "pro", now=NOW)
    set_subscription_fields(database, sub.id, plan_name="legacy")

    decision = evaluator.evaluate(agency, NOW)
    assert decision.authorized is True
    assert decision.plan_name == "starter"


# ============================================================================
# Decision model
# ============================================================================

def test_decision_json_round_trip(repository, evaluator, agency):
    repository.create_trial(agency, now=NOW)
    decision = evaluator.evaluate(agency, NOW)

    restored = AccessDecision.model_validate_json(decision.model_dump_json())

    assert restored == decision
    assert restored.resolved_features[Feature.ANALYTICS] == "basic"
    assert restored.resolved_features[Feature.WHATSAPP] is False
    assert restored.trial_info == decision.trial_info


def test_denied_decision_round_trip(repository, evaluator, agency):
    repository.create_trial(agency, now=NOW - timedelta(days=29))
    decision = evaluator.evaluate(agency, NOW)

    restored = AccessDecision.model_validate_json(decision.model_dump_json())
    assert restored.authorized is False
    assert restored.reason == AccessReason.TRIAL_EXPIRED
    assert restored.trial_end_date == decision.trial_end_date


def test_unlimited_limits_round_trip(repository, evaluator, agency):
    repository.activate_plan(agency, "agency", now=NOW)
    decision = evaluator.evaluate(agency, NOW)

    restored = AccessDecision.model_validate_json(decision.model_dump_json())
    assert restored.resolved_limits == {resource: None for resource in ResourceType}
    assert restored.limit_for("leads") is None


def test_unknown_feature_name_not_available(repository, evaluator, agency):
    repository.activate_plan(agency, "agency", now=NOW)
    decision = evaluator.evaluate(agency, NOW)

    assert decision.has_feature("sms") is False
    assert decision.has_feature("custom_domain") is True


# ============================================================================
# Failures
# ============================================================================

def test_store_failure_fails_closed(tmp_path):
    settings = Settings(env="test", database_path=str(tmp_path / "empty.db"))
    database = Database(settings)
    catalog = PlanCatalog(database)
    evaluator = AccessEvaluator(SubscriptionRepository(database, catalog, settings), catalog, settings)

    with pytest.raises(SubscriptionStoreError):
        evaluator.evaluate("tenant-1", NOW)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
