"""Stripe adapter for the payment gateway port."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from ...domain.errors import (
    GatewayUnavailableError,
    InvalidInvoicePayloadError,
    PermanentBillingError,
)
from ...domain.models import BillingRecordStatus, GatewayInvoice, LineItem, RetryOutcome
from ...domain.ports.billing import PaymentGateway

logger = logging.getLogger(__name__)


class StripePaymentGateway(PaymentGateway):
    """Lists and collects invoices through a dedicated ``stripe.StripeClient``."""

    PAGE_SIZE = 100

    def __init__(self, api_key: str, *, client: Optional[stripe.StripeClient] = None) -> None:
        if not api_key and client is None:
            raise ValueError("Stripe not configured. Please set STRIPE_SECRET_KEY first.")
        self._client = client or stripe.StripeClient(api_key)

    async def list_invoices(self, external_subscription_ref: str, since: datetime) -> List[GatewayInvoice]:
        payloads = await asyncio.to_thread(self._list_invoices_sync, external_subscription_ref, since)
        invoices = [normalize_invoice(payload) for payload in payloads]
        invoices.sort(key=lambda invoice: invoice.created)
        return invoices

    async def retry_invoice(self, external_invoice_ref: str) -> RetryOutcome:
        return await asyncio.to_thread(self._retry_invoice_sync, external_invoice_ref)

    def _list_invoices_sync(self, external_subscription_ref: str, since: datetime) -> List[Any]:
        params: Dict[str, Any] = {
            "subscription": external_subscription_ref,
            "created": {"gte": int(since.timestamp())},
            "limit": self.PAGE_SIZE,
        }
        try:
            page = self._client.v1.invoices.list(params=params)
            return list(page.auto_paging_iter())
        except stripe.InvalidRequestError as e:
            raise PermanentBillingError(
                f"Unknown subscription {external_subscription_ref}: {e.user_message or e}"
            ) from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            raise GatewayUnavailableError(str(e)) from e

    def _retry_invoice_sync(self, external_invoice_ref: str) -> RetryOutcome:
        try:
            payload = self._client.v1.invoices.pay(external_invoice_ref)
        except stripe.CardError as e:
            logger.info("Invoice %s declined: %s", external_invoice_ref, e.user_message or e)
            return RetryOutcome(success=False, status="declined", reason=e.user_message or str(e))
        except stripe.InvalidRequestError as e:
            raise PermanentBillingError(
                f"Invoice {external_invoice_ref} cannot be collected: {e.user_message or e}"
            ) from e
        except stripe.APIConnectionError as e:
            raise GatewayUnavailableError(str(e)) from e
        except (stripe.RateLimitError, stripe.APIError) as e:
            # Transient gateway faults count as a failed attempt.
            return RetryOutcome(success=False, status="gateway_error", reason=str(e))

        invoice = normalize_invoice(payload)
        success = invoice.status is BillingRecordStatus.PAID
        return RetryOutcome(
            success=success,
            status=invoice.status.value,
            reason=None if success else f"Invoice left in status {invoice.status.value}",
            invoice=invoice,
        )


def normalize_invoice(payload: Any) -> GatewayInvoice:
    """Map a Stripe invoice object onto ``GatewayInvoice``."""
    data = _as_mapping(payload)
    invoice_id = data.get("id")
    if not invoice_id:
        raise InvalidInvoicePayloadError("Invoice payload without id")

    try:
        status = BillingRecordStatus(data.get("status") or "draft")
    except ValueError as e:
        raise InvalidInvoicePayloadError(f"Invoice {invoice_id} has unknown status {data.get('status')!r}") from e

    transitions = _as_mapping(data.get("status_transitions") or {})
    lines = _as_mapping(data.get("lines") or {}).get("data") or []

    try:
        created = _from_timestamp(data.get("created"))
        if created is None:
            raise InvalidInvoicePayloadError(f"Invoice {invoice_id} has no creation time")
        return GatewayInvoice(
            external_invoice_ref=str(invoice_id),
            external_subscription_ref=_subscription_ref(data),
            status=status,
            amount_due=int(data.get("amount_due") or 0),
            amount_paid=int(data.get("amount_paid") or 0),
            amount_remaining=int(data.get("amount_remaining") or 0),
            currency=str(data.get("currency") or "usd"),
            created=created,
            due_date=_from_timestamp(data.get("due_date")),
            paid_at=_from_timestamp(transitions.get("paid_at")),
            voided_at=_from_timestamp(transitions.get("voided_at")),
            attempt_count=int(data.get("attempt_count") or 0),
            invoice_number=data.get("number"),
            hosted_invoice_url=data.get("hosted_invoice_url"),
            line_items=[_line_item(line) for line in lines],
        )
    except (TypeError, ValueError) as e:
        raise InvalidInvoicePayloadError(f"Invoice {invoice_id} is malformed: {e}") from e


def _subscription_ref(data: Mapping) -> Optional[str]:
    # Newer API versions moved the subscription under parent.subscription_details.
    ref = data.get("subscription")
    if ref is None:
        parent = _as_mapping(data.get("parent") or {})
        details = _as_mapping(parent.get("subscription_details") or {})
        ref = details.get("subscription")
    if isinstance(ref, Mapping):
        ref = ref.get("id")
    return str(ref) if ref else None


def _line_item(payload: Any) -> LineItem:
    line = _as_mapping(payload)
    return LineItem(
        description=str(line.get("description") or ""),
        amount=int(line.get("amount") or 0),
        quantity=int(line.get("quantity") or 1),
    )


def _as_mapping(payload: Any) -> Mapping:
    if isinstance(payload, Mapping):
        return payload
    to_dict = getattr(payload, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise InvalidInvoicePayloadError(f"Unexpected invoice payload type {type(payload).__name__}")


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
