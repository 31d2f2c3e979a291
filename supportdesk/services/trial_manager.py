"""Trial subscriptions: start, convert, cancel, extend, expire and remind."""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from ..core.clock import Clock, add_months, utcnow
from ..domain.errors import PlanNotFoundError, SubscriptionError
from ..domain.models import NotificationType, Plan, Subscription, SubscriptionStatus
from ..domain.ports.billing import Notifier
from ..domain.ports.persistence import PersistenceGateway
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

DEFAULT_TRIAL_DAYS = 14
REMINDER_DAYS = (7, 3, 1)
MAX_EXTENSION_DAYS = 30


class TrialManager:
    """Owns the ``trial`` leg of the subscription lifecycle."""

    def __init__(
        self,
        persistence: PersistenceGateway,
        subscription_service: SubscriptionService,
        notifier: Notifier,
        *,
        default_trial_days: int = DEFAULT_TRIAL_DAYS,
        reminder_days: Iterable[int] = REMINDER_DAYS,
        clock: Clock = utcnow,
    ) -> None:
        self._persistence = persistence
        self._subscriptions = subscription_service
        self._notifier = notifier
        self._default_trial_days = default_trial_days
        self._reminder_days = sorted({int(days) for days in reminder_days if int(days) > 0}, reverse=True)
        self._clock = clock

    def start_trial(
        self,
        tenant_id: str,
        plan_slug: str,
        *,
        trial_days: Optional[int] = None,
        send_welcome_email: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        plan = self._persistence.get_plan_by_slug(plan_slug)
        if plan is None or not plan.is_active:
            raise PlanNotFoundError(plan_slug)

        existing = self._persistence.get_subscription_for_tenant(tenant_id)
        if existing is not None and not existing.is_terminal():
            raise SubscriptionError("Tenant already has an active subscription or trial")

        if trial_days is not None and trial_days <= 0:
            raise SubscriptionError("Trial length must be a positive number of days")
        days = trial_days or plan.trial_days or self._default_trial_days

        now = self._clock()
        trial_end = now + timedelta(days=days)
        subscription = self._persistence.create_subscription(
            tenant_id,
            plan.id,
            SubscriptionStatus.TRIAL,
            now,
            trial_end,
            trial_start=now,
            trial_end=trial_end,
            metadata={
                **(metadata or {}),
                "trial_started_at": now.isoformat(),
                "original_trial_days": days,
            },
        )
        logger.info(
            "Trial %s started for tenant %s on plan %s (%s days)",
            subscription.id,
            tenant_id,
            plan.slug,
            days,
        )
        if send_welcome_email:
            self._notify(subscription, NotificationType.TRIAL_WELCOME, plan, {"trial_days": days})
        return subscription

    def convert_trial_to_paid(
        self,
        subscription_id: int,
        *,
        payment_method_ref: str,
        external_customer_ref: Optional[str] = None,
        external_subscription_ref: Optional[str] = None,
        send_welcome_email: bool = False,
    ) -> Subscription:
        if not payment_method_ref or not payment_method_ref.strip():
            raise SubscriptionError("A payment method is required to convert a trial")
        subscription = self._require_trial(subscription_id)
        now = self._clock()
        if subscription.trial_end is not None and now > subscription.trial_end:
            raise SubscriptionError("Trial has already expired")

        fields: Dict[str, Any] = {
            "current_period_start": now,
            "current_period_end": add_months(now, 1),
            "payment_method_ref": payment_method_ref.strip(),
        }
        if external_customer_ref:
            fields["external_customer_ref"] = external_customer_ref
        if external_subscription_ref:
            fields["external_subscription_ref"] = external_subscription_ref

        result = self._subscriptions.transition(
            subscription_id, SubscriptionStatus.ACTIVE, reason="trial_converted", fields=fields
        )
        if send_welcome_email and result.changed:
            self._notify(result.subscription, NotificationType.TRIAL_CONVERTED)
        return result.subscription

    def cancel_trial(self, subscription_id: int, reason: Optional[str] = None) -> Subscription:
        subscription = self._require_trial(subscription_id)
        now = self._clock()
        metadata = {
            **subscription.metadata,
            "cancellation_reason": reason,
            "cancelled_during_trial": True,
            "cancelled_at": now.isoformat(),
        }
        result = self._subscriptions.transition(
            subscription_id,
            SubscriptionStatus.CANCELLED,
            reason=reason or "trial_cancelled",
            fields={"metadata": metadata, "cancelled_at": now},
        )
        if result.changed:
            self._notify(result.subscription, NotificationType.TRIAL_CANCELLED, context={"reason": reason})
        return result.subscription

    def extend_trial(
        self, subscription_id: int, additional_days: int, reason: Optional[str] = None
    ) -> Subscription:
        if not 1 <= additional_days <= MAX_EXTENSION_DAYS:
            raise SubscriptionError(f"Additional days must be between 1 and {MAX_EXTENSION_DAYS}")
        subscription = self._require_trial(subscription_id)
        if subscription.trial_end is None:
            raise SubscriptionError("Trial end date not found")

        new_trial_end = subscription.trial_end + timedelta(days=additional_days)
        extensions: List[Dict[str, Any]] = list(subscription.metadata.get("trial_extensions", []))
        extensions.append(
            {
                "extended_at": self._clock().isoformat(),
                "additional_days": additional_days,
                "reason": reason,
                "new_trial_end": new_trial_end.isoformat(),
            }
        )
        updated = self._persistence.update_subscription(
            subscription_id,
            trial_end=new_trial_end,
            current_period_end=new_trial_end,
            metadata={**subscription.metadata, "trial_extensions": extensions},
        )
        logger.info(
            "Trial %s extended by %s days until %s (%s)",
            subscription_id,
            additional_days,
            new_trial_end.isoformat(),
            reason or "no reason given",
        )
        self._notify(updated, NotificationType.TRIAL_EXTENDED, context={"additional_days": additional_days})
        return updated

    def get_trial_status(self, subscription_id: int) -> Dict[str, Any]:
        subscription = self._subscriptions.get_subscription(subscription_id)
        if subscription.status is not SubscriptionStatus.TRIAL or subscription.trial_end is None:
            return {"is_in_trial": False, "can_convert": False, "can_extend": False}

        remaining = (subscription.trial_end - self._clock()).total_seconds()
        expired = remaining < 0
        return {
            "is_in_trial": True,
            "trial_start": subscription.trial_start,
            "trial_end": subscription.trial_end,
            "days_remaining": 0 if expired else math.ceil(remaining / 86400),
            "hours_remaining": 0 if expired else math.ceil(remaining / 3600),
            "has_expired": expired,
            "can_convert": not expired,
            "can_extend": not expired,
        }

    # Sweeps -----------------------------------------------------------------
    def process_expired_trials(self) -> Dict[str, int]:
        """Cancel trials whose end date passed without a conversion."""
        summary = {"processed": 0, "cancelled": 0, "errors": 0}
        for trial in self._persistence.find_expired_trials(self._clock()):
            summary["processed"] += 1
            try:
                result = self._subscriptions.transition(
                    trial.id,
                    SubscriptionStatus.CANCELLED,
                    reason="trial_expired",
                    fields={"metadata": {**trial.metadata, "cancellation_reason": "trial_expired"}},
                )
            except Exception:
                summary["errors"] += 1
                logger.exception("Failed to expire trial %s of tenant %s", trial.id, trial.tenant_id)
                continue
            if result.changed:
                summary["cancelled"] += 1
                self._notify(result.subscription, NotificationType.TRIAL_EXPIRED)
        logger.info("Processed expired trials: %s", summary)
        return summary

    def send_trial_reminders(self) -> Dict[str, int]:
        """Remind trials ending within each reminder window, once per window."""
        summary = {"sent": 0, "errors": 0}
        now = self._clock()
        for days in self._reminder_days:
            window_start = now + timedelta(days=days - 1)
            window_end = now + timedelta(days=days)
            try:
                trials = self._persistence.find_trials_ending_between(window_start, window_end)
            except Exception:
                summary["errors"] += 1
                logger.exception("Failed to load trials ending in %s days", days)
                continue
            for trial in trials:
                dedupe_key = f"{NotificationType.TRIAL_REMINDER.value}:{trial.id}:{days}"
                try:
                    if not self._persistence.claim_notification(
                        dedupe_key, trial.tenant_id, NotificationType.TRIAL_REMINDER.value
                    ):
                        continue
                    if not self._notify(trial, NotificationType.TRIAL_REMINDER, context={"days_remaining": days}):
                        self._persistence.release_notification(dedupe_key)
                        summary["errors"] += 1
                        continue
                except Exception:
                    summary["errors"] += 1
                    logger.exception("Failed to send %s-day reminder for trial %s", days, trial.id)
                    continue
                summary["sent"] += 1
        logger.info("Trial reminders finished: %s", summary)
        return summary

    # Helpers ----------------------------------------------------------------
    def _require_trial(self, subscription_id: int) -> Subscription:
        subscription = self._subscriptions.get_subscription(subscription_id)
        if subscription.status is not SubscriptionStatus.TRIAL:
            raise SubscriptionError("Subscription is not in trial status")
        return subscription

    def _notify(
        self,
        subscription: Subscription,
        notification_type: NotificationType,
        plan: Optional[Plan] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        plan = plan or self._persistence.get_plan(subscription.plan_id)
        payload = {
            "subscription_id": subscription.id,
            "plan_name": plan.name if plan else None,
            "trial_end": subscription.trial_end.date().isoformat() if subscription.trial_end else None,
            "current_period_end": subscription.current_period_end.date().isoformat(),
            **(context or {}),
        }
        try:
            return self._notifier.send(subscription.tenant_id, notification_type.value, payload)
        except Exception:
            logger.exception("Notifier failed for %s (subscription %s)", notification_type.value, subscription.id)
            return False
