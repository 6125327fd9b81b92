"""
leadestate/errors.py

Structured denial errors and their HTTP representation.

Domain code raises GateError (or lets SubscriptionStoreError propagate); only
the handlers registered in create_app() turn them into responses:

    {"success": false, "message": "...", "code": "TRIAL_EXPIRED", "data": {...}}
"""

from enum import Enum
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse
from starlette.requests import Request

from leadestate.access import AccessReason
from leadestate.subscriptions import SubscriptionStoreError


class ErrorCode(str, Enum):
    NO_TOKEN = "NO_TOKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    FEATURE_NOT_AVAILABLE = "FEATURE_NOT_AVAILABLE"
    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"


STATUS_BY_CODE: Dict[ErrorCode, int] = {
    ErrorCode.NO_TOKEN: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.NO_SUBSCRIPTION: 404,
    ErrorCode.TRIAL_EXPIRED: 402,
    ErrorCode.SUBSCRIPTION_INACTIVE: 402,
    ErrorCode.PAYMENT_REQUIRED: 402,
    ErrorCode.FEATURE_NOT_AVAILABLE: 403,
    ErrorCode.USAGE_LIMIT_EXCEEDED: 403,
}

CODE_BY_REASON: Dict[AccessReason, ErrorCode] = {
    AccessReason.NO_SUBSCRIPTION: ErrorCode.NO_SUBSCRIPTION,
    AccessReason.TRIAL_EXPIRED: ErrorCode.TRIAL_EXPIRED,
    AccessReason.SUBSCRIPTION_INACTIVE: ErrorCode.SUBSCRIPTION_INACTIVE,
    AccessReason.PAYMENT_REQUIRED: ErrorCode.PAYMENT_REQUIRED,
}


class GateError(Exception):
    """A definitive per-request denial with a machine-readable code."""

    def __init__(self, code: ErrorCode, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.data = data

    @property
    def status_code(self) -> int:
        return STATUS_BY_CODE[self.code]

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "code": self.code.value,
        }
        if self.data:
            body["data"] = self.data
        return body


async def gate_error_handler(request: Request, exc: GateError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def store_error_handler(request: Request, exc: SubscriptionStoreError):
    print(f"[ERROR] {request.method} {request.url.path}: {exc} ({exc.__cause__!r})")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Subscription check failed, please try again"},
    )
