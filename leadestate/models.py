"""
leadestate/models.py

Request bodies for the HTTP surface (camelCase aliases match the web client).
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from leadestate.auth_context import Role
from leadestate.plans import BillingCycle


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _normalize_email(value: str) -> str:
    value = value.strip().lower()
    local, _, domain = value.partition("@")
    if not local or "." not in domain:
        raise ValueError("Please provide a valid email address")
    return value


class TrialSignupRequest(CamelModel):
    email: str
    password: str = Field(min_length=6)
    first_name: str = Field(alias="firstName", min_length=1, max_length=50)
    last_name: str = Field(alias="lastName", min_length=1, max_length=50)
    company_name: Optional[str] = Field(default=None, alias="companyName", max_length=100)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _normalize_email(v)

    @field_validator("first_name", "last_name")
    @classmethod
    def strip_names(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name must not be blank")
        return v


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return v.strip().lower()


class UpgradeRequest(CamelModel):
    plan_name: str = Field(alias="planName")
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY, alias="billingCycle")
    # Accepted for the payment provider hand-off; not processed here
    payment_method_id: Optional[str] = Field(default=None, alias="paymentMethodId")


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class LeadCreateRequest(CamelModel):
    name: str = Field(min_length=1, max_length=200)
    email: Optional[str] = None
    phone: Optional[str] = None
    source: Optional[str] = None
    assigned_to: Optional[int] = Field(default=None, alias="assignedTo")


class PropertyCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    address: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)


class TeamMemberCreateRequest(CamelModel):
    email: str
    password: str = Field(min_length=6)
    first_name: str = Field(alias="firstName", min_length=1, max_length=50)
    last_name: str = Field(alias="lastName", min_length=1, max_length=50)
    role: str = Role.AGENT.value

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _normalize_email(v)

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        if v not in (Role.MANAGER, Role.AGENT):
            raise ValueError("Role must be 'manager' or 'agent'")
        return v


class WhatsAppMessageRequest(CamelModel):
    lead_id: int = Field(alias="leadId")
    message: str = Field(min_length=1, max_length=4096)
