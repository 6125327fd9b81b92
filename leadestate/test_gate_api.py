"""
leadestate/test_gate_api.py

End-to-end tests for the request gate through the HTTP app.

Tests verify:
1. Authentication errors (NO_TOKEN / INVALID_TOKEN / USER_NOT_FOUND)
2. Trial signup -> authorized requests with a trial block
3. Lapsed trial -> TRIAL_EXPIRED, then SUBSCRIPTION_INACTIVE
4. Feature and usage-limit denials with remediation data; team roles and lead assignees
5. Exempt routes stay reachable for lapsed tenants; upgrade restores access
6. Store failures surface as 500 and never authorize; signup is all-or-nothing
"""

from dataclasses import replace
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from leadestate.conftest import insert_leads
from leadestate.db import commit, execute_query, fetch_count, to_db_timestamp, utc_now
from leadestate.main import create_app
from leadestate.plans import PlanNotFound

UPGRADE_URL = "https://app.leadestate.test/upgrade"


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


def signup(client, email="owner@agency.test", password="secret123"):
    resp = client.post(
        "/api/auth/trial-signup",
        json={
            "email": email,
            "password": password,
            "firstName": "Olive",
            "lastName": "Owner",
            "companyName": "Harbor Homes",
        },
    )
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    return {
        "headers": {"Authorization": f"Bearer {data['token']}"},
        "agency_id": data["agency"]["id"],
        "data": data,
    }


def lapse_trial(app, agency_id, days_ago=15):
    with app.state.database.connect() as conn:
        execute_query(
            conn,
            "UPDATE subscriptions SET trial_end_date = ? WHERE tenant_id = ? AND status = 'trial'",
            (to_db_timestamp(utc_now() - timedelta(days=days_ago)), agency_id),
        )
        commit(conn)


# ============================================================================
# Authentication
# ============================================================================

def test_missing_token(client):
    resp = client.get("/api/leads")
    assert resp.status_code == 401
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "NO_TOKEN"


def test_invalid_token(client):
    resp = client.get("/api/leads", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "INVALID_TOKEN"


def test_non_bearer_scheme_is_no_token(client):
    resp = client.get("/api/leads", headers={"Authorization": "Basic b3duZXI6c2VjcmV0"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "NO_TOKEN"


def test_openapi_declares_bearer_scheme(app):
    schema = app.openapi()
    assert schema["components"]["securitySchemes"]["HTTPBearer"]["scheme"] == "bearer"
    assert {"HTTPBearer": []} in schema["paths"]["/api/leads"]["get"]["security"]


def test_inactive_user(app, client):
    owner = signup(client)
    with app.state.database.connect() as conn:
        execute_query(conn, "UPDATE users SET status = 'inactive' WHERE agency_id = ?", (owner["agency_id"],))
        commit(conn)

    resp = client.get("/api/leads", headers=owner["headers"])
    assert resp.status_code == 404
    assert resp.json()["code"] == "USER_NOT_FOUND"


def test_login(client):
    signup(client)
    resp = client.post("/api/auth/login", json={"email": "OWNER@agency.test", "password": "secret123"})
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["role"] == "owner"

    resp = client.post("/api/auth/login", json={"email": "owner@agency.test", "password": "wrong-pass"})
    assert resp.status_code == 401


# ============================================================================
# Trial lifecycle
# ============================================================================

def test_signup_starts_trial(client):
    owner = signup(client)
    sub = owner["data"]["subscription"]
    assert sub["status"] == "trial"
    assert sub["isTrial"] is True
    assert sub["planName"] == "starter"
    assert owner["data"]["trial"]["daysRemaining"] == 14

    resp = client.get("/api/leads", headers=owner["headers"])
    assert resp.status_code == 200
    body = resp.json()
    assert body["trial"]["daysRemaining"] == 14
    assert body["subscription"]["planName"] == "starter"


def test_duplicate_signup(client):
    signup(client)
    resp = client.post(
        "/api/auth/trial-signup",
        json={"email": "owner@agency.test", "password": "secret123", "firstName": "A", "lastName": "B"},
    )
    assert resp.status_code == 409


def table_counts(app):
    with app.state.database.connect() as conn:
        return {
            table: fetch_count(conn, f"SELECT COUNT(*) AS n FROM {table}")
            for table in ("agencies", "users", "subscriptions")
        }


def test_signup_is_atomic_when_trial_fails(app, client):
    with app.state.database.connect() as conn:
        execute_query(conn, "UPDATE subscription_plans SET is_active = 0 WHERE name = 'starter'")
        commit(conn)

    failed = client.post(
        "/api/auth/trial-signup",
        json={"email": "owner@agency.test", "password": "secret123", "firstName": "Olive", "lastName": "Owner"},
    )
    assert failed.status_code == 500
    assert table_counts(app) == {"agencies": 0, "users": 0, "subscriptions": 0}

    with app.state.database.connect() as conn:
        execute_query(conn, "UPDATE subscription_plans SET is_active = 1 WHERE name = 'starter'")
        commit(conn)

    # Retry is not blocked by a half-created account
    owner = signup(client)
    assert client.get("/api/leads", headers=owner["headers"]).status_code == 200


def test_unknown_default_plan_fails_startup(settings):
    with pytest.raises(PlanNotFound):
        create_app(replace(settings, default_plan_name="ghost"))


def test_expired_trial_then_inactive(app, client):
    owner = signup(client)
    lapse_trial(app, owner["agency_id"])

    first = client.get("/api/leads", headers=owner["headers"])
    assert first.status_code == 402
    body = first.json()
    assert body["code"] == "TRIAL_EXPIRED"
    assert body["data"]["upgradeUrl"] == UPGRADE_URL
    assert "trialEndDate" in body["data"]

    second = client.get("/api/leads", headers=owner["headers"])
    assert second.status_code == 402
    assert second.json()["code"] == "SUBSCRIPTION_INACTIVE"
    assert second.json()["data"]["status"] == "expired"


def test_exempt_routes_reachable_after_lapse(app, client):
    owner = signup(client)
    lapse_trial(app, owner["agency_id"])

    status = client.get("/api/subscription/status", headers=owner["headers"])
    assert status.status_code == 200
    data = status.json()["data"]
    assert data["access"]["authorized"] is False
    assert data["access"]["reason"] == "TRIAL_EXPIRED"
    assert data["trial"]["isExpired"] is True

    assert client.get("/api/subscription/plans").status_code == 200
    assert client.get("/health").status_code == 200


def test_upgrade_restores_access(app, client):
    owner = signup(client)
    lapse_trial(app, owner["agency_id"])
    client.get("/api/leads", headers=owner["headers"])

    resp = client.post(
        "/api/subscription/upgrade",
        json={"planName": "pro", "billingCycle": "annual"},
        headers=owner["headers"],
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["data"]["subscription"]["amount"] == 1900.0

    assert client.get("/api/leads", headers=owner["headers"]).status_code == 200

    history = client.get("/api/subscription/billing-history", headers=owner["headers"]).json()
    assert history["data"]["pagination"]["total"] == 1
    assert history["data"]["history"][0]["type"] == "upgrade"


def test_upgrade_unknown_plan(client):
    owner = signup(client)
    resp = client.post("/api/subscription/upgrade", json={"planName": "enterprise"}, headers=owner["headers"])
    assert resp.status_code == 404


def test_cancel_blocks_access(client):
    owner = signup(client)
    client.post("/api/subscription/upgrade", json={"planName": "pro"}, headers=owner["headers"])

    resp = client.post("/api/subscription/cancel", json={"reason": "Closing office"}, headers=owner["headers"])
    assert resp.status_code == 200
    assert resp.json()["data"]["subscription"]["cancelledReason"] == "Closing office"

    after = client.get("/api/leads", headers=owner["headers"])
    assert after.status_code == 402
    assert after.json()["data"]["status"] == "cancelled"


# ============================================================================
# Feature and usage gates
# ============================================================================

def test_whatsapp_not_on_starter(client):
    owner = signup(client)
    resp = client.post(
        "/api/integrations/whatsapp/messages",
        json={"leadId": 1, "message": "Hello"},
        headers=owner["headers"],
    )
    assert resp.status_code == 403
    body = resp.json()
    assert body["code"] == "FEATURE_NOT_AVAILABLE"
    assert body["data"]["feature"] == "whatsapp"
    assert body["data"]["currentPlan"] == "starter"
    assert body["data"]["upgradeUrl"] == UPGRADE_URL


def test_whatsapp_on_pro(client):
    owner = signup(client)
    client.post("/api/subscription/upgrade", json={"planName": "pro"}, headers=owner["headers"])
    lead = client.post(
        "/api/leads",
        json={"name": "Buyer", "phone": "+15550100"},
        headers=owner["headers"],
    ).json()["data"]

    resp = client.post(
        "/api/integrations/whatsapp/messages",
        json={"leadId": lead["id"], "message": "Hello"},
        headers=owner["headers"],
    )
    assert resp.status_code == 202
    assert resp.json()["data"]["status"] == "queued"


def test_analytics_tier(client):
    owner = signup(client)
    resp = client.get("/api/analytics/overview", headers=owner["headers"])
    assert resp.status_code == 200
    assert resp.json()["data"]["tier"] == "basic"


def test_lead_limit(app, client):
    owner = signup(client)
    insert_leads(app.state.database, owner["agency_id"], 999)

    ok = client.post("/api/leads", json={"name": "Lead 1000"}, headers=owner["headers"])
    assert ok.status_code == 201
    assert ok.json()["usage"]["currentCount"] == 999

    blocked = client.post("/api/leads", json={"name": "Lead 1001"}, headers=owner["headers"])
    assert blocked.status_code == 403
    body = blocked.json()
    assert body["code"] == "USAGE_LIMIT_EXCEEDED"
    assert body["data"]["resourceType"] == "leads"
    assert body["data"]["currentCount"] == 1000
    assert body["data"]["maxAllowed"] == 1000

    # Reading is still allowed at the limit
    assert client.get("/api/leads", headers=owner["headers"]).status_code == 200


def test_team_limit_and_owner_only_upgrade(client):
    owner = signup(client)
    for i in range(2):
        resp = client.post(
            "/api/team",
            json={
                "email": f"agent{i}@agency.test",
                "password": "secret123",
                "firstName": "Agent",
                "lastName": str(i),
            },
            headers=owner["headers"],
        )
        assert resp.status_code == 201, resp.text

    # Owner + 2 agents = starter's 3 users
    blocked = client.post(
        "/api/team",
        json={"email": "agent9@agency.test", "password": "secret123", "firstName": "Agent", "lastName": "9"},
        headers=owner["headers"],
    )
    assert blocked.status_code == 403
    assert blocked.json()["code"] == "USAGE_LIMIT_EXCEEDED"

    token = client.post(
        "/api/auth/login", json={"email": "agent0@agency.test", "password": "secret123"}
    ).json()["data"]["token"]
    resp = client.post(
        "/api/subscription/upgrade",
        json={"planName": "pro"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert resp.status_code == 403


def add_member(client, owner, email, role="agent"):
    return client.post(
        "/api/team",
        json={"email": email, "password": "secret123", "firstName": "Team", "lastName": "Member", "role": role},
        headers=owner["headers"],
    )


def login_headers(client, email, password="secret123"):
    token = client.post("/api/auth/login", json={"email": email, "password": password}).json()["data"]["token"]
    return {"Authorization": f"Bearer {token}"}


def test_only_owner_or_manager_adds_team(client):
    owner = signup(client)
    # Pro seats keep the usage limit out of the way
    client.post("/api/subscription/upgrade", json={"planName": "pro"}, headers=owner["headers"])
    assert add_member(client, owner, "agent@agency.test").status_code == 201
    assert add_member(client, owner, "manager@agency.test", role="manager").status_code == 201

    agent = {"headers": login_headers(client, "agent@agency.test")}
    manager = {"headers": login_headers(client, "manager@agency.test")}
    resp = add_member(client, agent, "other@agency.test")
    assert resp.status_code == 403
    assert "code" not in resp.json()
    assert add_member(client, manager, "other@agency.test").status_code == 201


def test_lead_assignee_must_belong_to_agency(client):
    owner = signup(client)
    rival = signup(client, email="rival@other.test")
    rival_user_id = rival["data"]["user"]["id"]

    resp = client.post(
        "/api/leads",
        json={"name": "Buyer", "assignedTo": rival_user_id},
        headers=owner["headers"],
    )
    assert resp.status_code == 404

    member_id = add_member(client, owner, "agent@agency.test").json()["data"]["id"]
    resp = client.post("/api/leads", json={"name": "Buyer", "assignedTo": member_id}, headers=owner["headers"])
    assert resp.status_code == 201

    leads = client.get("/api/leads", headers=owner["headers"]).json()["data"]
    assert [lead["assigned_to"] for lead in leads] == [member_id]


# ============================================================================
# Failures
# ============================================================================

def test_store_failure_is_500(app, client):
    owner = signup(client)
    with app.state.database.connect() as conn:
        execute_query(conn, "DROP TABLE subscriptions")
        commit(conn)

    resp = client.get("/api/leads", headers=owner["headers"])
    assert resp.status_code == 500
    assert resp.json()["success"] is False


def test_exempt_prefixes(app):
    gate = app.state.gate
    assert gate.is_exempt("/api/auth/login")
    assert gate.is_exempt("/api/subscription/status")
    assert not gate.is_exempt("/api/leads")
    assert not gate.is_exempt("/api/subscription/cancel")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
