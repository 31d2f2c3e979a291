"""Scheduled billing jobs: collection retries, gateway sync, reporting and retention."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Awaitable, Dict, Optional

from ..core.clock import Clock, add_months, month_bounds, previous_month, utcnow
from ..domain.errors import (
    BillingError,
    GatewayUnavailableError,
    InvalidInvoicePayloadError,
    PermanentBillingError,
)
from ..domain.models import (
    BillingRecord,
    BillingRecordStatus,
    GatewayInvoice,
    NotificationType,
    Subscription,
    SubscriptionStatus,
)
from ..domain.ports.billing import Notifier, PaymentGateway
from ..domain.ports.persistence import PersistenceGateway
from .subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

SUSPENSION_ATTEMPT_THRESHOLD = 4
PAYMENT_WARNING_ATTEMPT = 2
SYNC_LOOKBACK_DAYS = 30
RETENTION_YEARS = 2
GATEWAY_TIMEOUT_SECONDS = 15.0

SYNCED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL, SubscriptionStatus.PAST_DUE)
# Failed invoices are retried or escalated only for these subscriptions.
COLLECTED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.SUSPENDED)

_MIRRORED_FIELDS = (
    "status",
    "amount_due",
    "amount_paid",
    "amount_remaining",
    "currency",
    "due_date",
    "paid_at",
    "voided_at",
    "invoice_number",
    "hosted_invoice_url",
    "line_items",
)


@dataclass(slots=True)
class FailedPaymentSummary:
    processed: int = 0
    retried: int = 0
    suspended: int = 0
    notified: int = 0
    errors: int = 0


@dataclass(slots=True)
class SyncSummary:
    synced: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0


@dataclass(slots=True)
class CleanupSummary:
    deleted: int = 0


def invoice_changes(record: BillingRecord, invoice: GatewayInvoice) -> Dict[str, Any]:
    """Fields of ``record`` that differ from the gateway's copy of the invoice."""
    changes: Dict[str, Any] = {}
    for name in _MIRRORED_FIELDS:
        value = getattr(invoice, name)
        if name in ("invoice_number", "hosted_invoice_url") and value is None:
            continue
        if getattr(record, name) != value:
            changes[name] = value
    # Collection attempts only ever move forward.
    if invoice.attempt_count > record.attempt_count:
        changes["attempt_count"] = invoice.attempt_count
    return changes


class BillingReconciler:
    """
    Keeps local billing records and subscription statuses consistent with the gateway.

    Every job may be triggered more than once for the same period. Writes are
    upserts keyed by the gateway invoice reference, status changes go through
    ``SubscriptionService`` compare-and-set transitions, and one-off
    notifications are claimed in the notification ledger before dispatch.
    Failures are contained to the record or subscription being processed and
    reported in the job summary.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        gateway: Optional[PaymentGateway],
        subscription_service: SubscriptionService,
        notifier: Notifier,
        *,
        suspension_attempts: int = SUSPENSION_ATTEMPT_THRESHOLD,
        warning_attempt: int = PAYMENT_WARNING_ATTEMPT,
        sync_lookback_days: int = SYNC_LOOKBACK_DAYS,
        retention_years: int = RETENTION_YEARS,
        gateway_timeout: float = GATEWAY_TIMEOUT_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        self._persistence = persistence
        self._gateway = gateway
        self._subscriptions = subscription_service
        self._notifier = notifier
        self._suspension_attempts = suspension_attempts
        self._warning_attempt = warning_attempt
        self._sync_lookback = timedelta(days=sync_lookback_days)
        self._retention_years = retention_years
        self._gateway_timeout = gateway_timeout
        self._clock = clock

    # Failed payments --------------------------------------------------------
    async def process_failed_payments(self) -> FailedPaymentSummary:
        summary = FailedPaymentSummary()
        records = [
            record
            for record in self._persistence.list_outstanding_billing_records()
            if record.has_failed_attempt()
        ]
        logger.info("Processing %s failed payments", len(records))
        for record in records:
            try:
                await self._process_failed_record(record, summary)
            except Exception as e:
                summary.errors += 1
                if isinstance(e, BillingError):
                    logger.error("Failed payment %s skipped: %s", record.id, e)
                else:
                    logger.exception("Unexpected error processing failed payment %s", record.id)
        logger.info("Completed processing failed payments: %s", asdict(summary))
        return summary

    async def _process_failed_record(self, record: BillingRecord, summary: FailedPaymentSummary) -> None:
        subscription = self._persistence.get_subscription(record.subscription_id)
        if subscription is None:
            raise PermanentBillingError(
                f"Billing record {record.id} references unknown subscription {record.subscription_id}"
            )
        if subscription.status not in COLLECTED_STATUSES:
            logger.debug(
                "Skipping invoice %s of %s subscription %s",
                record.external_invoice_ref,
                subscription.status.value,
                subscription.id,
            )
            return
        summary.processed += 1

        if record.attempt_count >= self._suspension_attempts:
            result = self._subscriptions.suspend_for_nonpayment(subscription.id, record)
            if result.changed:
                summary.suspended += 1
                summary.notified += 1
                logger.info(
                    "Suspended subscription %s of tenant %s after %s failed attempts",
                    subscription.id,
                    subscription.tenant_id,
                    record.attempt_count,
                )
            return

        if self._gateway is None:
            logger.warning("No payment gateway configured; not retrying invoice %s", record.external_invoice_ref)
            return

        outcome = await self._call_gateway(self._gateway.retry_invoice(record.external_invoice_ref))
        if outcome.success:
            summary.retried += 1
            self._mark_collected(record, outcome.invoice)
            self._subscriptions.reconcile_status(subscription.id)
            logger.info("Collected invoice %s (%s %s)", record.external_invoice_ref, record.amount_due, record.currency)
            return

        updated = self._persistence.record_payment_attempt(record.id, record.attempt_count, outcome.reason)
        if updated is None:
            # A concurrent sync already mirrored the gateway's own count for this attempt.
            updated = self._persistence.get_billing_record(record.id)
            if updated is None or not updated.has_failed_attempt():
                return
            logger.info(
                "Attempt on invoice %s was already recorded (attempt_count=%s)",
                record.external_invoice_ref,
                updated.attempt_count,
            )
        self._subscriptions.reconcile_status(subscription.id)
        logger.warning(
            "Retry failed for invoice %s (attempt_count=%s): %s",
            record.external_invoice_ref,
            updated.attempt_count,
            outcome.reason,
        )
        if updated.attempt_count == self._warning_attempt and self._send_once(
            f"{NotificationType.PAYMENT_FAILED_WARNING.value}:{record.id}",
            subscription,
            NotificationType.PAYMENT_FAILED_WARNING,
            {
                "subscription_id": subscription.id,
                "invoice_number": updated.invoice_number or updated.external_invoice_ref,
                "attempt_count": updated.attempt_count,
                "failure_reason": updated.failure_reason or outcome.reason,
                "amount_due": updated.amount_due,
                "currency": updated.currency,
                "hosted_invoice_url": updated.hosted_invoice_url,
            },
        ):
            summary.notified += 1

    def _mark_collected(self, record: BillingRecord, invoice: Optional[GatewayInvoice]) -> None:
        if invoice is not None:
            changes = invoice_changes(record, invoice)
        else:
            changes = {
                "status": BillingRecordStatus.PAID,
                "amount_paid": record.amount_due,
                "amount_remaining": 0,
                "paid_at": self._clock(),
            }
        if changes:
            self._persistence.update_billing_record(record.id, **changes)

    # Gateway sync -----------------------------------------------------------
    async def sync_billing_records(self) -> SyncSummary:
        summary = SyncSummary()
        if self._gateway is None:
            logger.warning("No payment gateway configured; skipping billing record sync")
            return summary

        subscriptions = self._persistence.list_subscriptions(SYNCED_STATUSES, with_external_ref=True)
        since = self._clock() - self._sync_lookback
        logger.info("Syncing billing records for %s subscriptions", len(subscriptions))
        for subscription in subscriptions:
            try:
                invoices = await self._call_gateway(
                    self._gateway.list_invoices(subscription.external_subscription_ref, since)
                )
            except Exception as e:
                summary.errors += 1
                if isinstance(e, BillingError):
                    logger.error("Sync of subscription %s aborted: %s", subscription.id, e)
                else:
                    logger.exception("Unexpected error syncing subscription %s", subscription.id)
                continue

            for invoice in invoices:
                try:
                    outcome = self._upsert_invoice(subscription, invoice)
                except Exception:
                    summary.errors += 1
                    logger.exception(
                        "Failed to sync invoice %s of subscription %s",
                        invoice.external_invoice_ref,
                        subscription.id,
                    )
                    continue
                summary.synced += 1
                if outcome == "created":
                    summary.created += 1
                elif outcome == "updated":
                    summary.updated += 1

            try:
                self._subscriptions.reconcile_status(subscription.id)
            except Exception:
                summary.errors += 1
                logger.exception("Failed to reconcile status of subscription %s", subscription.id)
        logger.info("Completed syncing billing records: %s", asdict(summary))
        return summary

    def _upsert_invoice(self, subscription: Subscription, invoice: GatewayInvoice) -> str:
        if (
            invoice.external_subscription_ref
            and invoice.external_subscription_ref != subscription.external_subscription_ref
        ):
            raise InvalidInvoicePayloadError(
                f"Invoice {invoice.external_invoice_ref} belongs to "
                f"{invoice.external_subscription_ref}, not {subscription.external_subscription_ref}"
            )

        existing = self._persistence.get_billing_record_by_external_ref(invoice.external_invoice_ref)
        if existing is None:
            self._persistence.create_billing_record(subscription.id, invoice)
            return "created"
        if existing.subscription_id != subscription.id:
            raise PermanentBillingError(
                f"Invoice {invoice.external_invoice_ref} is already mirrored for "
                f"subscription {existing.subscription_id}"
            )
        if existing.is_settled():
            return "unchanged"

        changes = invoice_changes(existing, invoice)
        if not changes:
            return "unchanged"
        self._persistence.update_billing_record(existing.id, **changes)
        return "updated"

    # Reporting --------------------------------------------------------------
    async def generate_monthly_billing_report(
        self, year: Optional[int] = None, month: Optional[int] = None
    ) -> Dict[str, Any]:
        now = self._clock()
        if year is None or month is None:
            default_year, default_month = previous_month(now)
            year = default_year if year is None else year
            month = default_month if month is None else month
        start, end = month_bounds(year, month)

        revenue = self._persistence.get_revenue_stats(start, end)
        failed = self._persistence.list_failed_payments_between(start, end)
        by_status = self._persistence.count_subscriptions_created_between(start, end)

        report = {
            "period": {
                "year": year,
                "month": month,
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
            },
            "revenue": revenue,
            "subscriptions": {
                "new": sum(by_status.values()),
                "active": by_status.get(SubscriptionStatus.ACTIVE.value, 0),
                "trial": by_status.get(SubscriptionStatus.TRIAL.value, 0),
                "cancelled": by_status.get(SubscriptionStatus.CANCELLED.value, 0),
                "by_status": by_status,
            },
            "failed_payments": {
                "count": len(failed),
                "total_amount": sum(record.amount_due for record in failed),
            },
            "generated_at": now.isoformat(),
        }
        logger.info("Monthly billing report for %04d-%02d generated: %s", year, month, report)
        return report

    # Retention --------------------------------------------------------------
    async def cleanup_old_billing_records(self) -> CleanupSummary:
        cutoff = add_months(self._clock(), -12 * self._retention_years)
        deleted = self._persistence.delete_settled_billing_records_before(cutoff)
        logger.info("Deleted %s settled billing records dated before %s", deleted, cutoff.isoformat())
        return CleanupSummary(deleted=deleted)

    # Orchestration ----------------------------------------------------------
    async def run_all_jobs(self) -> Dict[str, Any]:
        """Run the recurring jobs side by side; each reports its own summary or error."""
        jobs: Dict[str, Awaitable[Any]] = {
            "failed_payments": self.process_failed_payments(),
            "sync_results": self.sync_billing_records(),
            "cleanup": self.cleanup_old_billing_records(),
        }
        logger.info("Running all scheduled billing jobs")
        outcomes = await asyncio.gather(*jobs.values(), return_exceptions=True)

        results: Dict[str, Any] = {}
        for name, outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error("Billing job %s failed: %s", name, outcome, exc_info=outcome)
                results[name] = {"error": str(outcome) or type(outcome).__name__}
            else:
                results[name] = asdict(outcome)
        logger.info("Completed all scheduled billing jobs: %s", results)
        return results

    # Helpers ----------------------------------------------------------------
    async def _call_gateway(self, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self._gateway_timeout)
        except asyncio.TimeoutError as e:
            raise GatewayUnavailableError(
                f"Payment gateway did not answer within {self._gateway_timeout}s"
            ) from e

    def _send_once(
        self,
        dedupe_key: str,
        subscription: Subscription,
        notification_type: NotificationType,
        context: Dict[str, Any],
    ) -> bool:
        if not self._persistence.claim_notification(
            dedupe_key, subscription.tenant_id, notification_type.value
        ):
            logger.debug("Notification %s already dispatched", dedupe_key)
            return False
        try:
            self._notifier.send(subscription.tenant_id, notification_type.value, context)
        except Exception:
            logger.exception("Notifier failed for %s", dedupe_key)
        return True
