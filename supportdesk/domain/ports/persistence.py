from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from ..models import (
    BillingRecord,
    GatewayInvoice,
    Plan,
    Subscription,
    SubscriptionStatus,
    TicketAction,
    UsageEvent,
    UsageSnapshot,
    User,
)


class SettingsRepository(Protocol):
    """Abstract storage for application key-value settings."""

    def get_setting(self, key: str) -> Optional[str]:
        ...

    def set_setting(self, key: str, value: str) -> None:
        ...


class PlanCatalog(Protocol):
    """Plan definitions; any limit may be -1 for unlimited."""

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        ...

    def get_plan_by_slug(self, slug: str) -> Optional[Plan]:
        ...

    def list_active_plans(self) -> List[Plan]:
        ...


class SubscriptionRepository(Protocol):
    """Persistence functions for tenant subscriptions."""

    def create_subscription(
        self,
        tenant_id: str,
        plan_id: int,
        status: SubscriptionStatus,
        current_period_start: datetime,
        current_period_end: datetime,
        *,
        trial_start: Optional[datetime] = None,
        trial_end: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        ...

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        ...

    def get_subscription_for_tenant(self, tenant_id: str) -> Optional[Subscription]:
        ...

    def list_subscriptions(
        self,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
        *,
        with_external_ref: bool = False,
    ) -> List[Subscription]:
        ...

    def update_subscription(self, subscription_id: int, **fields: Any) -> Subscription:
        ...

    def update_status_if(
        self,
        subscription_id: int,
        expected: SubscriptionStatus,
        target: SubscriptionStatus,
        **fields: Any,
    ) -> bool:
        ...

    def find_expired_trials(self, now: datetime) -> List[Subscription]:
        ...

    def find_trials_ending_between(self, start: datetime, end: datetime) -> List[Subscription]:
        ...

    def find_period_end_cancellations(self, now: datetime) -> List[Subscription]:
        ...

    def find_subscriptions_expiring_between(self, start: datetime, end: datetime) -> List[Subscription]:
        ...

    def count_subscriptions_created_between(
        self, start: datetime, end: datetime
    ) -> Dict[str, int]:
        ...


class BillingRecordRepository(Protocol):
    """Persistence functions for invoices mirrored from the gateway."""

    def get_billing_record(self, record_id: int) -> Optional[BillingRecord]:
        ...

    def get_billing_record_by_external_ref(self, external_invoice_ref: str) -> Optional[BillingRecord]:
        ...

    def create_billing_record(self, subscription_id: int, invoice: GatewayInvoice) -> BillingRecord:
        ...

    def update_billing_record(self, record_id: int, **fields: Any) -> BillingRecord:
        ...

    def list_billing_records(self, subscription_id: int) -> List[BillingRecord]:
        ...

    def list_outstanding_billing_records(self) -> List[BillingRecord]:
        ...

    def record_payment_attempt(
        self,
        record_id: int,
        expected_attempt_count: int,
        failure_reason: Optional[str],
    ) -> Optional[BillingRecord]:
        ...

    def get_revenue_stats(self, start: datetime, end: datetime) -> Dict[str, Any]:
        ...

    def list_failed_payments_between(self, start: datetime, end: datetime) -> List[BillingRecord]:
        ...

    def delete_settled_billing_records_before(self, cutoff: datetime) -> int:
        ...


class TicketCounter(Protocol):
    """Ticket activity owned by the ticket subsystem."""

    def record_usage_event(
        self,
        tenant_id: str,
        ticket_id: str,
        action: TicketAction,
        *,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageEvent:
        ...

    def get_usage(self, tenant_id: str) -> UsageSnapshot:
        ...

    def get_usage_for_period(self, tenant_id: str, start: datetime, end: datetime) -> UsageSnapshot:
        ...

    def get_recent_activity(self, tenant_id: str, limit: int) -> List[UsageEvent]:
        ...


class NotificationLedger(Protocol):
    """Remembers which deduplicated notifications were already dispatched."""

    def claim_notification(self, dedupe_key: str, tenant_id: str, notification_type: str) -> bool:
        ...

    def release_notification(self, dedupe_key: str) -> None:
        ...


class TenantDirectory(Protocol):
    def get_tenant_contact(self, tenant_id: str) -> Optional[str]:
        ...

    def set_tenant_contact(self, tenant_id: str, email: str) -> None:
        ...


class UserRepository(Protocol):
    """Administrator accounts."""

    def create_user(self, email: str, password_hash: str, is_active: bool = True) -> User:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        ...


class PersistenceGateway(
    SettingsRepository,
    PlanCatalog,
    SubscriptionRepository,
    BillingRecordRepository,
    TicketCounter,
    NotificationLedger,
    TenantDirectory,
    UserRepository,
    Protocol,
):
    """Aggregate persistence contract used across application services."""

    def close(self) -> None:
        ...
