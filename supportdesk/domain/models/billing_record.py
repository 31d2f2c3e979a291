"""Billing record mirroring one external gateway invoice."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class BillingRecordStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


# Records in these states are frozen; only retention cleanup may remove them.
SETTLED_STATUSES = frozenset({BillingRecordStatus.PAID, BillingRecordStatus.VOID})

# Unpaid invoices that still count against the subscription.
OUTSTANDING_STATUSES = frozenset({BillingRecordStatus.OPEN, BillingRecordStatus.UNCOLLECTIBLE})


@dataclass(slots=True)
class LineItem:
    description: str
    amount: int
    quantity: int = 1


@dataclass(slots=True)
class BillingRecord:
    """
    BillingRecord entity. Amounts are integer minor currency units.

    Attributes:
        id: Unique identifier
        subscription_id: Owning subscription
        external_invoice_ref: Gateway invoice identifier (unique)
        status: Invoice status
        attempt_count: Number of recorded collection attempts
        failure_reason: Last collection failure message
        line_items: Ordered invoice lines
    """

    id: int
    subscription_id: int
    external_invoice_ref: str
    status: BillingRecordStatus
    amount_due: int
    amount_paid: int
    amount_remaining: int
    currency: str
    billing_date: datetime
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    attempt_count: int = 0
    failure_reason: Optional[str] = None
    invoice_number: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    line_items: List[LineItem] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    def has_failed_attempt(self) -> bool:
        """An unpaid invoice with at least one recorded collection attempt."""
        return self.status in OUTSTANDING_STATUSES and self.attempt_count > 0
