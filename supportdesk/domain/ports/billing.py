from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Protocol

from ..models import GatewayInvoice, RetryOutcome


class PaymentGateway(Protocol):
    """External invoicing service of record."""

    async def list_invoices(self, external_subscription_ref: str, since: datetime) -> List[GatewayInvoice]:
        ...

    async def retry_invoice(self, external_invoice_ref: str) -> RetryOutcome:
        ...


class Notifier(Protocol):
    """Fire-and-forget tenant notifications; implementations never raise."""

    def send(self, tenant_id: str, notification_type: str, context: Dict[str, Any]) -> bool:
        ...
