"""
leadestate/auth_context.py

Authentication collaborator for the subscription gate.

Contains:
- Identity: tenant boundary derived from a verified JWT (tenant_id, user_id, role)
- create_access_token / authenticate: HS256 tokens via PyJWT
- hash_password / verify_password: salted PBKDF2

Identity is the ONLY source of tenant_id for protected endpoints. Never trust
agency ids from request bodies or query params.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import timedelta
from enum import Enum
from typing import Optional

import jwt
from fastapi.security import HTTPBearer
from pydantic import BaseModel

from leadestate.config import Settings
from leadestate.db import Database, STORE_ERRORS, fetch_one, utc_now
from leadestate.errors import ErrorCode, GateError
from leadestate.subscriptions import SubscriptionStoreError

PBKDF2_ITERATIONS = 200_000

# Bearer scheme; a missing header is reported as NO_TOKEN by authenticate()
security = HTTPBearer(auto_error=False)


class Role(str, Enum):
    OWNER = "owner"
    MANAGER = "manager"
    AGENT = "agent"


class Identity(BaseModel):
    """
    Authenticated caller.

    Fields:
        user_id: User id from the token subject
        tenant_id: Agency id the user belongs to (read from the users table, not the token)
        role: User role within the agency
        email: User email
    """
    user_id: int
    tenant_id: str
    role: str
    email: str

    @property
    def is_owner(self) -> bool:
        return self.role == Role.OWNER.value


# ---------------------------------------------------------
# Passwords
# ---------------------------------------------------------
def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        scheme, iterations, salt, expected = password_hash.split("$")
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


# ---------------------------------------------------------
# Tokens
# ---------------------------------------------------------
def create_access_token(settings: Settings, user_id: int, tenant_id: str, role: str) -> str:
    payload = {
        "sub": str(user_id),
        "agency_id": tenant_id,
        "role": role,
        "exp": utc_now() + timedelta(days=settings.access_token_days),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str, settings: Settings) -> dict:
    """
    Verify a JWT access token and return its payload.

    Raises:
        GateError(INVALID_TOKEN): If the token is expired, malformed or badly signed
    """
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except jwt.ExpiredSignatureError:
        raise GateError(ErrorCode.INVALID_TOKEN, "Token expired, please log in again")
    except jwt.InvalidTokenError:
        raise GateError(ErrorCode.INVALID_TOKEN, "Invalid token")


def authenticate(token: Optional[str], settings: Settings, database: Database) -> Identity:
    """
    Resolve the caller from a bearer token.

    Args:
        token: JWT taken from the Authorization header by `security` (None if absent)
        settings: JWT secret/algorithm
        database: Store holding the users table

    Returns:
        Identity of an existing, active user

    Raises:
        GateError: NO_TOKEN, INVALID_TOKEN or USER_NOT_FOUND
        SubscriptionStoreError: If the users table cannot be read
    """
    if not token:
        raise GateError(ErrorCode.NO_TOKEN, "Access denied. No token provided.")

    payload = verify_token(token, settings)
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise GateError(ErrorCode.INVALID_TOKEN, "Invalid token payload")

    try:
        with database.connect() as conn:
            user = fetch_one(
                conn,
                "SELECT id, email, role, agency_id, status FROM users WHERE id = ?",
                (user_id,),
            )
    except STORE_ERRORS as e:
        print(f"[AUTH] User lookup failed for user_id={user_id}: {e}")
        raise SubscriptionStoreError("Failed to load user") from e

    if not user or user.get("status") != "active":
        if settings.is_dev:
            print(f"[AUTH] Token for unknown or inactive user_id={user_id}")
        raise GateError(ErrorCode.USER_NOT_FOUND, "User not found or inactive")

    return Identity(
        user_id=int(user["id"]),
        tenant_id=str(user["agency_id"]),
        role=user["role"],
        email=user["email"],
    )
