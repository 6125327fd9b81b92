"""
leadestate/routes_auth.py

Trial signup and login. These routes are exempt from subscription
enforcement (the caller has no token yet).
"""

from __future__ import annotations

import uuid
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request

from leadestate.auth_context import Role, create_access_token, hash_password, verify_password
from leadestate.db import (
    INTEGRITY_ERRORS,
    STORE_ERRORS,
    commit,
    execute_query,
    fetch_one,
    insert_returning_id,
    rollback,
    to_db_timestamp,
    utc_now,
)
from leadestate.models import LoginRequest, TrialSignupRequest
from leadestate.plans import PlanNotFound
from leadestate.subscriptions import SubscriptionStatus, SubscriptionStoreError, subscription_to_dict

router = APIRouter(
    prefix="/api/auth",
    tags=["auth"],
)


def _user_payload(user_id: int, email: str, first_name: str, last_name: str, role: str,
                  agency_id: str) -> Dict[str, Any]:
    return {
        "id": user_id,
        "email": email,
        "firstName": first_name,
        "lastName": last_name,
        "role": role,
        "agencyId": agency_id,
    }


@router.post("/trial-signup", status_code=201)
def trial_signup(req: TrialSignupRequest, request: Request) -> Dict[str, Any]:
    """
    Create an agency, its owner user and the signup trial.

    Returns:
        Token, user, agency and the new trial subscription

    Raises:
        HTTPException(409): Email already registered
        HTTPException(500): Database error
    """
    state = request.app.state
    database = state.database
    now = utc_now()

    try:
        with database.connect() as conn:
            existing = fetch_one(
                conn,
                "SELECT id, agency_id FROM users WHERE email = ?",
                (req.email,),
            )
    except STORE_ERRORS as e:
        print(f"[SIGNUP] Email lookup failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to create trial account. Please try again.") from e

    if existing:
        latest = state.subscriptions.find_latest_subscription(existing["agency_id"])
        if latest is not None and latest.status == SubscriptionStatus.EXPIRED:
            raise HTTPException(
                status_code=409,
                detail="Account exists but trial expired. Please contact support to reactivate.",
            )
        raise HTTPException(status_code=409, detail="An account with this email already exists")

    agency_id = str(uuid.uuid4())
    agency_name = req.company_name or f"{req.first_name} {req.last_name}'s Agency"
    stamp = to_db_timestamp(now)

    # Agency, owner and trial commit together or not at all
    with database.connect() as conn:
        try:
            execute_query(
                conn,
                "INSERT INTO agencies (id, name, email, status, created_at) VALUES (?, ?, ?, 'active', ?)",
                (agency_id, agency_name, req.email, stamp),
            )
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
                    Role.OWNER.value,
                    agency_id,
                    stamp,
                ),
            )
            subscription = state.subscriptions.create_trial(agency_id, now=now, conn=conn)
            commit(conn)
        except INTEGRITY_ERRORS as e:
            rollback(conn)
            # Concurrent signup with the same email
            raise HTTPException(status_code=409, detail="An account with this email already exists") from e
        except PlanNotFound as e:
            rollback(conn)
            print(f"[SIGNUP] Trial plan unavailable: {e}")
            raise HTTPException(status_code=500, detail="Failed to create trial account. Please try again.") from e
        except (SubscriptionStoreError, *STORE_ERRORS) as e:
            rollback(conn)
            print(f"[SIGNUP] Account creation failed: {e}")
            raise HTTPException(status_code=500, detail="Failed to create trial account. Please try again.") from e

    trial_info = state.evaluator.trial_info(subscription.trial_end_date, now)

    print(f"[SIGNUP] Trial account created: user_id={user_id}, agency_id={agency_id}")

    token = create_access_token(state.settings, user_id, agency_id, Role.OWNER.value)
    return {
        "success": True,
        "message": "Trial account created successfully",
        "data": {
            "token": token,
            "user": _user_payload(user_id, req.email, req.first_name, req.last_name, Role.OWNER.value, agency_id),
            "agency": {"id": agency_id, "name": agency_name},
            "subscription": subscription_to_dict(subscription),
            "trial": {
                "daysRemaining": trial_info.days_remaining,
                "isExpiringSoon": trial_info.is_expiring_soon,
                "endDate": trial_info.end_date.isoformat(),
            },
        },
    }


@router.post("/login")
def login(req: LoginRequest, request: Request) -> Dict[str, Any]:
    state = request.app.state

    try:
        with state.database.connect() as conn:
            row = fetch_one(
                conn,
                """
                SELECT id, email, password_hash, first_name, last_name, role, agency_id, status
                FROM users WHERE email = ?
                """,
                (req.email,),
            )
    except STORE_ERRORS as e:
        print(f"[LOGIN] User lookup failed: {e}")
        raise HTTPException(status_code=500, detail="Login failed") from e

    if not row or not verify_password(req.password, row["password_hash"]):
        if state.settings.is_dev:
            print("[LOGIN] Invalid credentials")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if row["status"] != "active":
        raise HTTPException(status_code=403, detail="Account is not active")

    token = create_access_token(state.settings, int(row["id"]), str(row["agency_id"]), row["role"])
    return {
        "success": True,
        "data": {
            "token": token,
            "user": _user_payload(
                int(row["id"]),
                row["email"],
                row["first_name"],
                row["last_name"],
                row["role"],
                str(row["agency_id"]),
            ),
        },
    }
