"""
leadestate/main.py

FastAPI application factory.

Run:
    uvicorn leadestate.main:create_app --factory --reload
"""

from __future__ import annotations

from typing import Dict, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadestate.access import AccessEvaluator
from leadestate.config import Settings, load_settings
from leadestate.db import Database
from leadestate.dependencies import enforce_subscription
from leadestate.errors import GateError, gate_error_handler, store_error_handler
from leadestate.gate import SubscriptionGate
from leadestate.migrate import run_migrations
from leadestate.plans import PlanCatalog
from leadestate.routes_auth import router as auth_router
from leadestate.routes_crm import router as crm_router
from leadestate.routes_subscription import router as subscription_router
from leadestate.subscriptions import SubscriptionRepository, SubscriptionStoreError
from leadestate.usage import UsageCounter


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the app and its components once.

    Components are stored on app.state (settings, database, catalog,
    subscriptions, evaluator, usage, gate) so routes and dependencies share
    the same configured instances.
    """
    settings = settings or load_settings()

    database = Database(settings)
    run_migrations(database)

    catalog = PlanCatalog(database, settings.default_plan_name)
    catalog.seed_default_plans()
    # Signup trials need the configured default plan; PlanNotFound aborts startup
    catalog.get_default_plan()

    subscriptions = SubscriptionRepository(database, catalog, settings)
    evaluator = AccessEvaluator(subscriptions, catalog, settings)
    usage = UsageCounter(database)
    gate = SubscriptionGate(settings, database, evaluator, usage)

    app = FastAPI(
        title="LeadEstate Backend",
        version="0.1",
        dependencies=[Depends(enforce_subscription)],
    )

    app.state.settings = settings
    app.state.database = database
    app.state.catalog = catalog
    app.state.subscriptions = subscriptions
    app.state.evaluator = evaluator
    app.state.usage = usage
    app.state.gate = gate

    app.add_exception_handler(GateError, gate_error_handler)
    app.add_exception_handler(SubscriptionStoreError, store_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins) if settings.is_prod else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    app.include_router(auth_router)
    app.include_router(subscription_router)
    app.include_router(crm_router)

    return app
