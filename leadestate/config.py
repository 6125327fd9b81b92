# leadestate/config.py
# Environment-aware configuration for the LeadEstate backend.
#
# Settings are read from the environment ONCE (load_settings) and then passed
# into the components that need them. Nothing below this module reads
# os.environ during request handling.

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

DEFAULT_EXEMPT_ROUTE_PREFIXES: Tuple[str, ...] = (
    "/api/auth/",
    "/api/subscription/upgrade",
    "/api/subscription/status",
    "/api/subscription/plans",
    "/health",
)

DEFAULT_CORS_ORIGINS: Tuple[str, ...] = (
    "http://localhost:3000",
    "http://127.0.0.1:3000",
)


@dataclass(frozen=True)
class Settings:
    """
    Immutable process configuration.

    Build it with load_settings() at startup (or directly in tests) and hand
    it to create_app(); the access evaluator and request gate only ever see
    the instance they were constructed with.
    """
    env: str = "dev"

    # JWT
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    access_token_days: int = 30

    # Database: DATABASE_URL (PostgreSQL) takes precedence over the SQLite file
    database_url: str = ""
    database_path: str = "leadestate.db"

    # Subscription / trial policy
    trial_period_days: int = 14
    expiring_soon_days: int = 3
    past_due_grace_days: int = 0
    default_plan_name: str = "starter"

    # Remediation links and routing
    frontend_url: str = "http://localhost:3000"
    exempt_route_prefixes: Tuple[str, ...] = DEFAULT_EXEMPT_ROUTE_PREFIXES
    cors_origins: Tuple[str, ...] = field(default=DEFAULT_CORS_ORIGINS)

    @property
    def is_dev(self) -> bool:
        return self.env == "dev"

    @property
    def is_prod(self) -> bool:
        return self.env == "prod"

    @property
    def is_postgres(self) -> bool:
        return self.database_url.startswith(("postgres://", "postgresql://"))

    @property
    def upgrade_url(self) -> str:
        return f"{self.frontend_url.rstrip('/')}/upgrade"


def _split_csv(raw: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Read Settings from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Settings instance

    Raises:
        ValueError: If a numeric variable is malformed or a policy value is negative
    """
    if environ is None:
        environ = os.environ

    env = environ.get("ENV", "dev")

    exempt_raw = environ.get("EXEMPT_ROUTE_PREFIXES", "").strip()
    exempt = _split_csv(exempt_raw) if exempt_raw else DEFAULT_EXEMPT_ROUTE_PREFIXES

    cors = list(DEFAULT_CORS_ORIGINS)
    extra_origins = environ.get("CORS_ORIGINS", "").strip()
    if extra_origins:
        cors.extend(_split_csv(extra_origins))

    settings = Settings(
        env=env,
        secret_key=environ.get("JWT_SECRET", "change-me"),
        access_token_days=_int(environ, "ACCESS_TOKEN_DAYS", 30),
        database_url=environ.get("DATABASE_URL", "").strip(),
        database_path=environ.get("DATABASE_PATH", "leadestate.db"),
        trial_period_days=_int(environ, "TRIAL_PERIOD_DAYS", 14),
        expiring_soon_days=_int(environ, "TRIAL_EXPIRING_SOON_DAYS", 3),
        past_due_grace_days=_int(environ, "PAST_DUE_GRACE_DAYS", 0),
        default_plan_name=environ.get("DEFAULT_PLAN", "starter").strip().lower() or "starter",
        frontend_url=environ.get("FRONTEND_URL", "http://localhost:3000"),
        exempt_route_prefixes=exempt,
        cors_origins=tuple(cors),
    )

    if settings.trial_period_days < 1:
        raise ValueError("TRIAL_PERIOD_DAYS must be at least 1")
    if settings.past_due_grace_days < 0 or settings.expiring_soon_days < 0:
        raise ValueError("Grace and expiring-soon windows must not be negative")

    print(f"[CONFIG] Environment: {settings.env}")
    print(f"[CONFIG] Database: {'PostgreSQL' if settings.is_postgres else 'SQLite (local dev)'}")
    print(f"[CONFIG] Trial period: {settings.trial_period_days} days")
    print(f"[CONFIG] Past-due grace: {settings.past_due_grace_days} days")
    if settings.is_prod and settings.secret_key == "change-me":
        print("[CONFIG] WARNING: JWT_SECRET is not set in production")

    return settings
