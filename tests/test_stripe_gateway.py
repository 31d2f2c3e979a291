import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import stripe

from supportdesk.domain.errors import (
    GatewayUnavailableError,
    InvalidInvoicePayloadError,
    PermanentBillingError,
)
from supportdesk.domain.models import BillingRecordStatus
from supportdesk.infrastructure.gateways.stripe_gateway import StripePaymentGateway, normalize_invoice

CREATED = 1709251200  # 2024-03-01T00:00:00Z


def _payload(**overrides):
    payload = {
        "id": "in_1",
        "subscription": "sub_1",
        "status": "open",
        "amount_due": 2900,
        "amount_paid": 0,
        "amount_remaining": 2900,
        "currency": "usd",
        "created": CREATED,
        "due_date": CREATED + 86400,
        "attempt_count": 2,
        "number": "INV-0001",
        "hosted_invoice_url": "https://pay.example/in_1",
        "status_transitions": {"paid_at": None, "voided_at": None},
        "lines": {"data": [{"description": "Starter", "amount": 2900, "quantity": 1}]},
    }
    payload.update(overrides)
    return payload


class _Page:
    def __init__(self, items):
        self._items = items

    def auto_paging_iter(self):
        return iter(self._items)


def _client(pay=None, list_=None):
    invoices = SimpleNamespace(pay=pay, list=list_)
    return SimpleNamespace(v1=SimpleNamespace(invoices=invoices))


def test_normalize_invoice():
    invoice = normalize_invoice(_payload())
    assert invoice.external_invoice_ref == "in_1"
    assert invoice.external_subscription_ref == "sub_1"
    assert invoice.status is BillingRecordStatus.OPEN
    assert invoice.created == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert invoice.attempt_count == 2
    assert invoice.invoice_number == "INV-0001"
    assert invoice.line_items[0].amount == 2900
    assert invoice.paid_at is None


def test_normalize_invoice_reads_parent_subscription_details():
    payload = _payload(subscription=None, parent={"subscription_details": {"subscription": "sub_9"}})
    assert normalize_invoice(payload).external_subscription_ref == "sub_9"


@pytest.mark.parametrize(
    "overrides",
    [{"id": None}, {"status": "refunded"}, {"created": None}, {"amount_due": "lots"}],
)
def test_normalize_invoice_rejects_malformed_payloads(overrides):
    with pytest.raises(InvalidInvoicePayloadError):
        normalize_invoice(_payload(**overrides))


def test_retry_success_returns_paid_invoice():
    paid = _payload(status="paid", amount_paid=2900, amount_remaining=0, status_transitions={"paid_at": CREATED})
    gateway = StripePaymentGateway("sk_test", client=_client(pay=lambda ref: paid))
    outcome = asyncio.run(gateway.retry_invoice("in_1"))
    assert outcome.success
    assert outcome.invoice.paid_at == datetime(2024, 3, 1, tzinfo=timezone.utc)


def test_retry_leaving_invoice_open_is_a_failure():
    gateway = StripePaymentGateway("sk_test", client=_client(pay=lambda ref: _payload()))
    outcome = asyncio.run(gateway.retry_invoice("in_1"))
    assert not outcome.success
    assert outcome.status == "open"


def test_card_decline_is_a_failed_attempt():
    def pay(ref):
        raise stripe.CardError("Your card was declined.", None, "card_declined")

    gateway = StripePaymentGateway("sk_test", client=_client(pay=pay))
    outcome = asyncio.run(gateway.retry_invoice("in_1"))
    assert not outcome.success
    assert outcome.status == "declined"
    assert outcome.reason == "Your card was declined."


def test_unknown_invoice_is_permanent():
    def pay(ref):
        raise stripe.InvalidRequestError("No such invoice", "id")

    gateway = StripePaymentGateway("sk_test", client=_client(pay=pay))
    with pytest.raises(PermanentBillingError):
        asyncio.run(gateway.retry_invoice("in_missing"))


def test_connection_error_marks_gateway_unavailable():
    def pay(ref):
        raise stripe.APIConnectionError("connection reset")

    gateway = StripePaymentGateway("sk_test", client=_client(pay=pay))
    with pytest.raises(GatewayUnavailableError):
        asyncio.run(gateway.retry_invoice("in_1"))


def test_list_invoices_sorted_by_creation():
    captured = {}

    def list_(params):
        captured.update(params)
        return _Page([_payload(id="in_2", created=CREATED + 60), _payload(id="in_1")])

    gateway = StripePaymentGateway("sk_test", client=_client(list_=list_))
    since = datetime(2024, 2, 1, tzinfo=timezone.utc)
    invoices = asyncio.run(gateway.list_invoices("sub_1", since))

    assert [invoice.external_invoice_ref for invoice in invoices] == ["in_1", "in_2"]
    assert captured["subscription"] == "sub_1"
    assert captured["created"] == {"gte": int(since.timestamp())}


def test_list_invoices_rate_limited():
    def list_(params):
        raise stripe.RateLimitError("slow down")

    gateway = StripePaymentGateway("sk_test", client=_client(list_=list_))
    with pytest.raises(GatewayUnavailableError):
        asyncio.run(gateway.list_invoices("sub_1", datetime(2024, 2, 1, tzinfo=timezone.utc)))


def test_gateway_requires_key():
    with pytest.raises(ValueError):
        StripePaymentGateway("")
