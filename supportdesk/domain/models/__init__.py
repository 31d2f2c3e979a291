"""Domain models for the support-desk billing engine."""

from .billing_record import (
    OUTSTANDING_STATUSES,
    SETTLED_STATUSES,
    BillingRecord,
    BillingRecordStatus,
    LineItem,
)
from .gateway import GatewayInvoice, RetryOutcome
from .notification import NotificationType
from .plan import UNLIMITED, Plan, PlanLimits
from .subscription import SERVICEABLE_STATUSES, Subscription, SubscriptionStatus
from .usage import (
    GateDecision,
    LimitStatus,
    PercentageUsed,
    TicketAction,
    UsageEvent,
    UsageSnapshot,
)
from .user import User

__all__ = [
    "BillingRecord",
    "BillingRecordStatus",
    "GateDecision",
    "GatewayInvoice",
    "LimitStatus",
    "LineItem",
    "NotificationType",
    "PercentageUsed",
    "Plan",
    "PlanLimits",
    "RetryOutcome",
    "SERVICEABLE_STATUSES",
    "OUTSTANDING_STATUSES",
    "SETTLED_STATUSES",
    "Subscription",
    "SubscriptionStatus",
    "TicketAction",
    "UNLIMITED",
    "UsageEvent",
    "UsageSnapshot",
    "User",
]
