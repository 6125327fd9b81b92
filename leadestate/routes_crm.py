"""
leadestate/routes_crm.py

CRM endpoints (leads, properties, team, integrations, analytics).

Security guarantees:
- Every route here goes through the app-wide subscription gate
- Creation routes are additionally guarded by the plan's usage limit
- Integration/analytics routes are additionally guarded by a plan feature
- All queries are filtered by the agency id from the authenticated identity
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from leadestate.access import feature_value
from leadestate.auth_context import Role, hash_password
from leadestate.db import (
    INTEGRITY_ERRORS,
    STORE_ERRORS,
    commit,
    fetch_all,
    fetch_one,
    insert_returning_id,
    to_db_timestamp,
    utc_now,
)
from leadestate.dependencies import require_feature, require_subscription_context, require_usage_limit
from leadestate.gate import SubscriptionContext
from leadestate.models import (
    LeadCreateRequest,
    PropertyCreateRequest,
    TeamMemberCreateRequest,
    WhatsAppMessageRequest,
)
from leadestate.plans import Feature, ResourceType

router = APIRouter(
    prefix="/api",
    tags=["crm"],
)


def _usage_block(ctx: SubscriptionContext, resource_type: ResourceType) -> Dict[str, Any]:
    snapshot = ctx.usage.get(resource_type)
    return snapshot.to_dict() if snapshot else {}


def _store_failure(what: str, e: Exception) -> HTTPException:
    print(f"[CRM] {what} failed: {e}")
    return HTTPException(status_code=500, detail=f"Failed to {what}")


# ---------------------------------------------------------
# Leads
# ---------------------------------------------------------
@router.get("/leads")
def list_leads(request: Request, ctx: SubscriptionContext = Depends(require_subscription_context)) -> Dict[str, Any]:
    try:
        with request.app.state.database.connect() as conn:
            leads = fetch_all(
                conn,
                """
                SELECT id, name, email, phone, source, status, assigned_to, created_at
                FROM leads WHERE agency_id = ?
                ORDER BY created_at DESC, id DESC
                """,
                (ctx.tenant_id,),
            )
    except STORE_ERRORS as e:
        raise _store_failure("list leads", e) from e

    return {
        "success": True,
        "data": leads,
        "subscription": ctx.subscription_block(),
        "trial": ctx.trial_block(),
    }


@router.post("/leads", status_code=201)
def create_lead(
    req: LeadCreateRequest,
    request: Request,
    ctx: SubscriptionContext = Depends(require_usage_limit(ResourceType.LEADS)),
) -> Dict[str, Any]:
    """
    Create a lead for the caller's agency.

    Raises:
        GateError(USAGE_LIMIT_EXCEEDED): Plan's lead limit reached (handled by dependency)
        HTTPException(404): assignedTo is not an active user of the caller's agency
    """
    now = to_db_timestamp(utc_now())
    assignee_id = req.assigned_to or ctx.identity.user_id
    try:
        with request.app.state.database.connect() as conn:
            if req.assigned_to is not None:
                assignee = fetch_one(
                    conn,
                    "SELECT id FROM users WHERE id = ? AND agency_id = ? AND status = 'active'",
                    (req.assigned_to, ctx.tenant_id),
                )
                if not assignee:
                    raise HTTPException(status_code=404, detail="Assigned user not found")

            lead_id = insert_returning_id(
                conn,
                """
                INSERT INTO leads (agency_id, name, email, phone, source, status, assigned_to, created_at)
                VALUES (?, ?, ?, ?, ?, 'new', ?, ?)
                """,
                (
                    ctx.tenant_id,
                    req.name,
                    req.email,
                    req.phone,
                    req.source,
                    assignee_id,
                    now,
                ),
            )
            commit(conn)
    except STORE_ERRORS as e:
        raise _store_failure("create lead", e) from e

    return {
        "success": True,
        "data": {"id": lead_id, "name": req.name, "status": "new", "createdAt": now},
        "usage": _usage_block(ctx, ResourceType.LEADS),
    }


# ---------------------------------------------------------
# Properties
# ---------------------------------------------------------
@router.get("/properties")
def list_properties(
    request: Request,
    ctx: SubscriptionContext = Depends(require_subscription_context),
) -> Dict[str, Any]:
    try:
        with request.app.state.database.connect() as conn:
            properties = fetch_all(
                conn,
                """
                SELECT id, title, address, price, listed_by, created_at
                FROM properties WHERE agency_id = ?
                ORDER BY created_at DESC, id DESC
                """,
                (ctx.tenant_id,),
            )
    except STORE_ERRORS as e:
        raise _store_failure("list properties", e) from e

    return {"success": True, "data": properties, "subscription": ctx.subscription_block()}


@router.post("/properties", status_code=201)
def create_property(
    req: PropertyCreateRequest,
    request: Request,
    ctx: SubscriptionContext = Depends(require_usage_limit(ResourceType.PROPERTIES)),
) -> Dict[str, Any]:
    now = to_db_timestamp(utc_now())
    try:
        with request.app.state.database.connect() as conn:
            property_id = insert_returning_id(
                conn,
                """
                INSERT INTO properties (agency_id, title, address, price, listed_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (ctx.tenant_id, req.title, req.address, req.price, ctx.identity.user_id, now),
            )
            commit(conn)
    except STORE_ERRORS as e:
        raise _store_failure("create property", e) from e

    return {
        "success": True,
        "data": {"id": property_id, "title": req.title, "createdAt": now},
        "usage": _usage_block(ctx, ResourceType.PROPERTIES),
    }


# ---------------------------------------------------------
# Team
# ---------------------------------------------------------
@router.post("/team", status_code=201)
def add_team_member(
    req: TeamMemberCreateRequest,
    request: Request,
    ctx: SubscriptionContext = Depends(require_usage_limit(ResourceType.USERS)),
) -> Dict[str, Any]:
    if ctx.identity.role not in (Role.OWNER, Role.MANAGER):
        raise HTTPException(status_code=403, detail="Only owners and managers can add team members")

    now = to_db_timestamp(utc_now())
    try:
        with request.app.state.database.connect() as conn:
            user_id = insert_returning_id(
                conn,
                """
                INSERT INTO users (email, password_hash, first_name, last_name, role, agency_id, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 'active', ?)
                """,
                (
                    req.email,
                    hash_password(req.password),
                    req.first_name,
                    req.last_name,
                    req.role,
                    ctx.tenant_id,
                    now,
                ),
            )
            commit(conn)
    except INTEGRITY_ERRORS as e:
        raise HTTPException(status_code=409, detail="A user with this email already exists") from e
    except STORE_ERRORS as e:
        raise _store_failure("add team member", e) from e

    return {
        "success": True,
        "data": {"id": user_id, "email": req.email, "role": req.role},
        "usage": _usage_block(ctx, ResourceType.USERS),
    }


# ---------------------------------------------------------
# Feature-gated
# ---------------------------------------------------------
@router.post("/integrations/whatsapp/messages", status_code=202)
def send_whatsapp_message(
    req: WhatsAppMessageRequest,
    request: Request,
    ctx: SubscriptionContext = Depends(require_feature(Feature.WHATSAPP)),
) -> Dict[str, Any]:
    """Queue a WhatsApp message to a lead (delivery is done by the messaging provider)."""
    try:
        with request.app.state.database.connect() as conn:
            lead = fetch_one(
                conn,
                "SELECT id, phone FROM leads WHERE id = ? AND agency_id = ?",
                (req.lead_id, ctx.tenant_id),
            )
    except STORE_ERRORS as e:
        raise _store_failure("load lead", e) from e

    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    if not lead.get("phone"):
        raise HTTPException(status_code=400, detail="Lead has no phone number")

    return {
        "success": True,
        "message": "Message queued",
        "data": {"leadId": lead["id"], "to": lead["phone"], "status": "queued"},
    }


@router.get("/analytics/overview")
def analytics_overview(
    request: Request,
    ctx: SubscriptionContext = Depends(require_feature(Feature.ANALYTICS)),
) -> Dict[str, Any]:
    try:
        with request.app.state.database.connect() as conn:
            by_status = fetch_all(
                conn,
                "SELECT status, COUNT(*) AS n FROM leads WHERE agency_id = ? GROUP BY status ORDER BY status",
                (ctx.tenant_id,),
            )
    except STORE_ERRORS as e:
        raise _store_failure("load analytics", e) from e

    usage = request.app.state.usage.usage_summary(ctx.tenant_id, ctx.decision.resolved_limits)
    return {
        "success": True,
        "data": {
            "tier": feature_value(ctx.decision, Feature.ANALYTICS),
            "leadsByStatus": {row["status"]: int(row["n"]) for row in by_status},
            "usage": {resource.value: snapshot.to_dict() for resource, snapshot in usage.items()},
        },
    }
