"""Subscription lifecycle transitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from ..core.clock import Clock, utcnow
from ..domain.errors import InvalidTransitionError, SubscriptionError, SubscriptionNotFoundError
from ..domain.models import BillingRecord, NotificationType, Subscription, SubscriptionStatus
from ..domain.ports.billing import Notifier
from ..domain.ports.persistence import PersistenceGateway
from ..domain.subscription_state import assert_transition, derive_status
from .usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

EXPIRING_SOON_DAYS = 7


@dataclass(slots=True)
class TransitionResult:
    subscription: Subscription
    previous_status: SubscriptionStatus
    changed: bool


class SubscriptionService:
    """Applies status changes against the store's current status, never a cached copy."""

    MAX_TRANSITION_ATTEMPTS = 3

    def __init__(
        self,
        persistence: PersistenceGateway,
        notifier: Notifier,
        *,
        usage_tracker: Optional[UsageTracker] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._persistence = persistence
        self._notifier = notifier
        self._usage_tracker = usage_tracker
        self._clock = clock

    def get_subscription(self, subscription_id: int) -> Subscription:
        subscription = self._persistence.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    def get_tenant_subscription(self, tenant_id: str) -> Subscription:
        subscription = self._persistence.get_subscription_for_tenant(tenant_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"for tenant {tenant_id}")
        return subscription

    def transition(
        self,
        subscription_id: int,
        target: SubscriptionStatus,
        *,
        reason: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Move a subscription to ``target`` if the state machine allows it.

        The write is a compare-and-set on the status read just before it, so
        two jobs racing on the same subscription cannot both apply a change.
        Requesting the status the subscription already has is a no-op.

        Raises:
            SubscriptionNotFoundError: Unknown subscription
            InvalidTransitionError: ``target`` is not reachable from the current status
        """
        target = SubscriptionStatus(target)
        original: Optional[SubscriptionStatus] = None
        for _ in range(self.MAX_TRANSITION_ATTEMPTS):
            subscription = self.get_subscription(subscription_id)
            if original is None:
                original = subscription.status
            if subscription.status is target:
                return TransitionResult(subscription, original, False)
            assert_transition(subscription.status, target)

            updates = dict(fields or {})
            if target is SubscriptionStatus.CANCELLED:
                updates.setdefault("cancelled_at", self._clock())
                updates.setdefault("cancel_at_period_end", False)
            if self._persistence.update_status_if(subscription_id, subscription.status, target, **updates):
                logger.info(
                    "Subscription %s moved %s -> %s (%s)",
                    subscription_id,
                    subscription.status.value,
                    target.value,
                    reason or "unspecified",
                )
                return TransitionResult(self.get_subscription(subscription_id), original, True)
            logger.debug("Subscription %s changed concurrently; re-reading", subscription_id)

        current = self.get_subscription(subscription_id)
        raise InvalidTransitionError(current.status.value, target.value)

    def reconcile_status(self, subscription_id: int) -> TransitionResult:
        """Apply whatever ``derive_status`` says the billing records imply."""
        subscription = self.get_subscription(subscription_id)
        records = self._persistence.list_billing_records(subscription_id)
        target = derive_status(subscription.status, records)
        if target is subscription.status:
            return TransitionResult(subscription, subscription.status, False)
        return self.transition(subscription_id, target, reason="billing_reconciliation")

    def suspend_for_nonpayment(self, subscription_id: int, record: BillingRecord) -> TransitionResult:
        """
        Escalate a subscription whose invoice exhausted its collection attempts.

        An ``active`` subscription passes through ``past_due`` first so the
        state machine is respected. Exactly one ``subscription_suspended``
        notification is sent, and only when this call performed the change.
        """
        subscription = self.get_subscription(subscription_id)
        original = subscription.status
        if original is SubscriptionStatus.SUSPENDED:
            return TransitionResult(subscription, original, False)
        if original is SubscriptionStatus.ACTIVE:
            self.transition(subscription_id, SubscriptionStatus.PAST_DUE, reason="payment_failed")

        result = self.transition(subscription_id, SubscriptionStatus.SUSPENDED, reason="nonpayment")
        if result.changed:
            self._notify(
                result.subscription.tenant_id,
                NotificationType.SUBSCRIPTION_SUSPENDED,
                {
                    "subscription_id": subscription_id,
                    "invoice_number": record.invoice_number or record.external_invoice_ref,
                    "attempt_count": record.attempt_count,
                    "amount_due": record.amount_due,
                    "currency": record.currency,
                },
            )
        return TransitionResult(result.subscription, original, result.changed)

    def cancel_subscription(
        self,
        subscription_id: int,
        *,
        at_period_end: bool = False,
        reason: Optional[str] = None,
    ) -> Subscription:
        subscription = self.get_subscription(subscription_id)
        if subscription.is_terminal():
            raise SubscriptionError(
                f"Subscription {subscription_id} is already cancelled", status_code=409
            )
        metadata = dict(subscription.metadata)
        if reason:
            metadata["cancellation_reason"] = reason

        if at_period_end:
            logger.info(
                "Subscription %s will cancel at period end %s",
                subscription_id,
                subscription.current_period_end.isoformat(),
            )
            return self._persistence.update_subscription(
                subscription_id, cancel_at_period_end=True, metadata=metadata
            )

        result = self.transition(
            subscription_id,
            SubscriptionStatus.CANCELLED,
            reason=reason or "cancelled_by_request",
            fields={"metadata": metadata},
        )
        if result.changed:
            self._notify_cancelled(result.subscription, reason)
        return result.subscription

    def process_period_end_cancellations(self) -> Dict[str, int]:
        """Cancel subscriptions flagged ``cancel_at_period_end`` whose period is over."""
        summary = {"processed": 0, "cancelled": 0, "errors": 0}
        for subscription in self._persistence.find_period_end_cancellations(self._clock()):
            summary["processed"] += 1
            try:
                result = self.transition(
                    subscription.id, SubscriptionStatus.CANCELLED, reason="period_end"
                )
            except Exception:
                summary["errors"] += 1
                logger.exception("Failed to cancel subscription %s at period end", subscription.id)
                continue
            if result.changed:
                summary["cancelled"] += 1
                self._notify_cancelled(result.subscription, "period_end")
        logger.info("Period-end cancellations finished: %s", summary)
        return summary

    def get_subscription_stats(self, threshold_percent: Optional[float] = None) -> Dict[str, Any]:
        now = self._clock()
        expired_trials = self._persistence.find_expired_trials(now)
        expiring = self._persistence.find_subscriptions_expiring_between(
            now, now + timedelta(days=EXPIRING_SOON_DAYS)
        )
        approaching = (
            self._usage_tracker.get_users_approaching_limits(threshold_percent)
            if self._usage_tracker is not None
            else []
        )
        return {
            "expired_trials": len(expired_trials),
            "expiring_subscriptions": len(expiring),
            "users_approaching_limits": len(approaching),
            "details": {
                "expired_trials": [subscription.id for subscription in expired_trials],
                "expiring_subscriptions": [subscription.id for subscription in expiring],
                "users_approaching_limits": approaching,
            },
        }

    def _notify_cancelled(self, subscription: Subscription, reason: Optional[str]) -> None:
        plan = self._persistence.get_plan(subscription.plan_id)
        self._notify(
            subscription.tenant_id,
            NotificationType.SUBSCRIPTION_CANCELLED,
            {
                "subscription_id": subscription.id,
                "plan_name": plan.name if plan else None,
                "reason": reason,
            },
        )

    def _notify(self, tenant_id: str, notification_type: NotificationType, context: Dict[str, Any]) -> bool:
        try:
            return self._notifier.send(tenant_id, notification_type.value, context)
        except Exception:
            logger.exception("Notifier failed for %s (tenant %s)", notification_type.value, tenant_id)
            return False
