# leadestate/migrate.py
# Database migration module for PostgreSQL and SQLite
# Run: python -m leadestate.migrate

from leadestate.config import load_settings
from leadestate.db import Database, commit, execute_query

# Column types that differ between the two dialects
_SQLITE_TYPES = {"pk": "INTEGER PRIMARY KEY AUTOINCREMENT", "money": "REAL"}
_POSTGRES_TYPES = {"pk": "SERIAL PRIMARY KEY", "money": "NUMERIC(10, 2)"}

# Booleans are stored as INTEGER 0/1 in both dialects so query parameters stay identical.
_TABLES = [
    # Tenants
    """
    CREATE TABLE IF NOT EXISTS agencies (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id {pk},
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        role TEXT NOT NULL DEFAULT 'agent',
        agency_id TEXT NOT NULL REFERENCES agencies (id),
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT NOT NULL
    )
    """,
    # Tenant-owned resources counted against plan limits
    """
    CREATE TABLE IF NOT EXISTS leads (
        id {pk},
        agency_id TEXT NOT NULL REFERENCES agencies (id),
        name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        source TEXT,
        status TEXT NOT NULL DEFAULT 'new',
        assigned_to INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS properties (
        id {pk},
        agency_id TEXT NOT NULL REFERENCES agencies (id),
        title TEXT NOT NULL,
        address TEXT,
        price {money},
        listed_by INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    # Plan catalog
    """
    CREATE TABLE IF NOT EXISTS subscription_plans (
        id {pk},
        name TEXT UNIQUE NOT NULL,
        display_name TEXT NOT NULL,
        description TEXT,
        monthly_price {money} NOT NULL,
        quarterly_price {money},
        semi_annual_price {money},
        annual_price {money},
        max_leads INTEGER,
        max_users INTEGER,
        max_properties INTEGER,
        features TEXT NOT NULL DEFAULT '{{}}',
        is_active INTEGER NOT NULL DEFAULT 1,
        sort_order INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    # Subscription history (rows are never deleted)
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id {pk},
        tenant_id TEXT NOT NULL,
        plan_name TEXT NOT NULL REFERENCES subscription_plans (name),
        status TEXT NOT NULL DEFAULT 'trial',
        billing_cycle TEXT NOT NULL DEFAULT 'monthly',
        is_trial INTEGER NOT NULL DEFAULT 0,
        trial_start_date TEXT,
        trial_end_date TEXT,
        trial_converted INTEGER NOT NULL DEFAULT 0,
        current_period_start TEXT NOT NULL,
        current_period_end TEXT NOT NULL,
        next_billing_date TEXT,
        amount {money} NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'USD',
        cancelled_at TEXT,
        cancelled_reason TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_history (
        id {pk},
        subscription_id INTEGER NOT NULL REFERENCES subscriptions (id),
        tenant_id TEXT NOT NULL,
        user_id INTEGER,
        transaction_type TEXT NOT NULL,
        amount {money} NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'USD',
        status TEXT NOT NULL,
        description TEXT,
        billing_period_start TEXT,
        billing_period_end TEXT,
        created_at TEXT NOT NULL
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_users_agency_id ON users(agency_id)",
    "CREATE INDEX IF NOT EXISTS idx_leads_agency_id ON leads(agency_id)",
    "CREATE INDEX IF NOT EXISTS idx_properties_agency_id ON properties(agency_id)",
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_tenant_id ON subscriptions(tenant_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_status_trial_end ON subscriptions(status, trial_end_date)",
    "CREATE INDEX IF NOT EXISTS idx_billing_history_tenant_id ON billing_history(tenant_id, created_at)",
    # At most one current (trial/active) subscription per tenant
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_one_current
    ON subscriptions(tenant_id) WHERE status IN ('trial', 'active')
    """,
]


def run_migrations(database: Database) -> None:
    """
    Run all database migrations (idempotent).
    Creates tables and indexes if missing. Safe to run multiple times.
    """
    types = _POSTGRES_TYPES if database.is_postgres else _SQLITE_TYPES
    dialect = "PostgreSQL" if database.is_postgres else "SQLite"

    if database.settings.is_dev:
        print(f"[MIGRATE] Running {dialect} migrations...")

    with database.connect() as conn:
        for ddl in _TABLES:
            execute_query(conn, ddl.format(**types))
        for ddl in _INDEXES:
            execute_query(conn, ddl)
        commit(conn)

    if database.settings.is_dev:
        print(f"[MIGRATE] {dialect} migrations complete")


if __name__ == "__main__":
    run_migrations(Database(load_settings()))
