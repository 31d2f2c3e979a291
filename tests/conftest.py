import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from supportdesk.domain.models import (
    BillingRecordStatus,
    GatewayInvoice,
    RetryOutcome,
    SubscriptionStatus,
)
from supportdesk.infrastructure.persistence.sqlite import SQLitePersistence
from supportdesk.services.billing_reconciler import BillingReconciler
from supportdesk.services.subscription_service import SubscriptionService
from supportdesk.services.trial_manager import TrialManager
from supportdesk.services.usage_tracker import UsageTracker

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    """In-memory payment gateway with scriptable outcomes."""

    def __init__(self) -> None:
        self.invoices: Dict[str, List[GatewayInvoice]] = {}
        self.retry_outcomes: Dict[str, RetryOutcome] = {}
        self.hang_on: set = set()
        self.fail_on: Dict[str, Exception] = {}
        self.retry_calls: List[str] = []
        self.list_calls: List[str] = []

    async def list_invoices(self, external_subscription_ref: str, since: datetime) -> List[GatewayInvoice]:
        self.list_calls.append(external_subscription_ref)
        if external_subscription_ref in self.hang_on:
            await asyncio.sleep(60)
        if external_subscription_ref in self.fail_on:
            raise self.fail_on[external_subscription_ref]
        return list(self.invoices.get(external_subscription_ref, []))

    async def retry_invoice(self, external_invoice_ref: str) -> RetryOutcome:
        self.retry_calls.append(external_invoice_ref)
        if external_invoice_ref in self.hang_on:
            await asyncio.sleep(60)
        if external_invoice_ref in self.fail_on:
            raise self.fail_on[external_invoice_ref]
        return self.retry_outcomes.get(
            external_invoice_ref, RetryOutcome(success=False, status="declined", reason="card_declined")
        )


class RecordingNotifier:
    def __init__(self, result: bool = True) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.result = result

    def send(self, tenant_id: str, notification_type: str, context: Dict[str, Any]) -> bool:
        self.sent.append({"tenant_id": tenant_id, "type": notification_type, "context": context})
        return self.result

    def of_type(self, notification_type: str) -> List[Dict[str, Any]]:
        return [item for item in self.sent if item["type"] == notification_type]


def make_invoice(
    ref: str,
    subscription_ref: Optional[str],
    *,
    status: BillingRecordStatus = BillingRecordStatus.OPEN,
    amount_due: int = 2900,
    attempt_count: int = 0,
    created: datetime = NOW - timedelta(days=3),
    paid: bool = False,
) -> GatewayInvoice:
    return GatewayInvoice(
        external_invoice_ref=ref,
        external_subscription_ref=subscription_ref,
        status=status,
        amount_due=amount_due,
        amount_paid=amount_due if paid else 0,
        amount_remaining=0 if paid else amount_due,
        currency="usd",
        created=created,
        paid_at=created + timedelta(hours=1) if paid else None,
        attempt_count=attempt_count,
        invoice_number=f"INV-{ref}",
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def persistence(tmp_path, clock):
    store = SQLitePersistence(tmp_path / "billing.db", clock=clock)
    yield store
    store.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def usage_tracker(persistence) -> UsageTracker:
    return UsageTracker(persistence, cache_ttl_seconds=30, warning_threshold=75)


@pytest.fixture
def subscription_service(persistence, notifier, usage_tracker, clock) -> SubscriptionService:
    return SubscriptionService(persistence, notifier, usage_tracker=usage_tracker, clock=clock)


@pytest.fixture
def reconciler(persistence, gateway, subscription_service, notifier, clock) -> BillingReconciler:
    return BillingReconciler(
        persistence,
        gateway,
        subscription_service,
        notifier,
        gateway_timeout=0.05,
        clock=clock,
    )


@pytest.fixture
def trial_manager(persistence, subscription_service, notifier, clock) -> TrialManager:
    return TrialManager(persistence, subscription_service, notifier, clock=clock)


@pytest.fixture
def make_subscription(persistence):
    def _make(
        tenant_id: str = "acme",
        plan_slug: str = "starter",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        *,
        external_ref: Optional[str] = None,
        period_start: datetime = NOW - timedelta(days=10),
        period_end: datetime = NOW + timedelta(days=20),
        **fields: Any,
    ):
        plan = persistence.get_plan_by_slug(plan_slug)
        subscription = persistence.create_subscription(
            tenant_id, plan.id, status, period_start, period_end
        )
        if external_ref:
            fields["external_subscription_ref"] = external_ref
        if fields:
            subscription = persistence.update_subscription(subscription.id, **fields)
        return subscription

    return _make
