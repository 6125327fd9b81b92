"""
leadestate/conftest.py

Shared pytest fixtures: a migrated temp-file SQLite database per test with the
default plan catalog seeded.
"""

import uuid
from datetime import datetime, timezone

import pytest

from leadestate.access import AccessEvaluator
from leadestate.config import Settings
from leadestate.db import Database, commit, execute_query, to_db_timestamp
from leadestate.migrate import run_migrations
from leadestate.plans import PlanCatalog
from leadestate.subscriptions import SubscriptionRepository
from leadestate.usage import UsageCounter

# Fixed evaluation time used across tests
NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        env="test",
        secret_key="test-secret",
        database_path=str(tmp_path / "leadestate_test.db"),
        frontend_url="https://app.leadestate.test",
    )


@pytest.fixture
def database(settings):
    db = Database(settings)
    run_migrations(db)
    return db


@pytest.fixture
def catalog(database, settings):
    plan_catalog = PlanCatalog(database, settings.default_plan_name)
    plan_catalog.seed_default_plans()
    return plan_catalog


@pytest.fixture
def repository(database, catalog, settings):
    return SubscriptionRepository(database, catalog, settings)


@pytest.fixture
def evaluator(repository, catalog, settings):
    return AccessEvaluator(repository, catalog, settings)


@pytest.fixture
def usage_counter(database):
    return UsageCounter(database)


@pytest.fixture
def agency(database):
    """Create an agency row and return its id."""
    return make_agency(database)


def make_agency(database, name="Test Agency"):
    agency_id = str(uuid.uuid4())
    with database.connect() as conn:
        execute_query(
            conn,
            "INSERT INTO agencies (id, name, status, created_at) VALUES (?, ?, 'active', ?)",
            (agency_id, name, to_db_timestamp(NOW)),
        )
        commit(conn)
    return agency_id


def insert_leads(database, agency_id, count, assigned_to=None):
    stamp = to_db_timestamp(NOW)
    with database.connect() as conn:
        conn.executemany(
            "INSERT INTO leads (agency_id, name, status, assigned_to, created_at) VALUES (?, ?, 'new', ?, ?)",
            [(agency_id, f"Lead {i}", assigned_to, stamp) for i in range(count)],
        )
        commit(conn)


def set_subscription_fields(database, subscription_id, **fields):
    assignments = ", ".join(f"{name} = ?" for name in fields)
    with database.connect() as conn:
        execute_query(
            conn,
            f"UPDATE subscriptions SET {assignments} WHERE id = ?",
            (*fields.values(), subscription_id),
        )
        commit(conn)
