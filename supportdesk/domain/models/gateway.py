"""Normalized payment gateway payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .billing_record import BillingRecordStatus, LineItem


@dataclass(slots=True)
class GatewayInvoice:
    external_invoice_ref: str
    external_subscription_ref: Optional[str]
    status: BillingRecordStatus
    amount_due: int
    amount_paid: int
    amount_remaining: int
    currency: str
    created: datetime
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    attempt_count: int = 0
    invoice_number: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    line_items: List[LineItem] = field(default_factory=list)


@dataclass(slots=True)
class RetryOutcome:
    success: bool
    status: Optional[str] = None
    reason: Optional[str] = None
    invoice: Optional[GatewayInvoice] = None
