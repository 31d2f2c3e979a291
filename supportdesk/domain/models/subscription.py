"""Subscription domain model linking tenants to plans and the payment gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


# Statuses that still grant access to the product.
SERVICEABLE_STATUSES = frozenset(
    {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)


@dataclass(slots=True)
class Subscription:
    """
    Subscription entity representing a tenant's plan enrolment.

    Attributes:
        id: Unique identifier
        tenant_id: Owning tenant (company account)
        plan_id: Reference to the catalog plan
        status: Lifecycle status (trial, active, past_due, suspended, cancelled)
        current_period_start: Start of current billing period
        current_period_end: End of current billing period
        trial_start: When the trial began, if any
        trial_end: When the trial ends, if any
        cancel_at_period_end: Whether subscription will cancel at period end
        cancelled_at: When the subscription entered the cancelled state
        external_customer_ref: Payment gateway customer identifier
        external_subscription_ref: Payment gateway subscription identifier
        payment_method_ref: Payment gateway payment method identifier
        metadata: Free-form bookkeeping (trial extensions, cancellation reason)
        created_at: Subscription creation timestamp
        updated_at: Last update timestamp
    """

    id: int
    tenant_id: str
    plan_id: int
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    payment_method_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_serviceable(self) -> bool:
        """Check if the tenant may keep using the product."""
        return self.status in SERVICEABLE_STATUSES

    def is_terminal(self) -> bool:
        return self.status is SubscriptionStatus.CANCELLED
