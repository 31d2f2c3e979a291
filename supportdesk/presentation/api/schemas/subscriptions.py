"""Pydantic schemas for subscription and trial endpoints."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr, Field


class StartTrialRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    plan_slug: str = Field(min_length=1)
    trial_days: Optional[int] = None
    send_welcome_email: bool = False
    contact_email: Optional[EmailStr] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConvertTrialRequest(BaseModel):
    payment_method_ref: str = Field(min_length=1)
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    send_welcome_email: bool = False


class CancelTrialRequest(BaseModel):
    reason: Optional[str] = None


class ExtendTrialRequest(BaseModel):
    additional_days: int
    reason: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    at_period_end: bool = False
    reason: Optional[str] = None
