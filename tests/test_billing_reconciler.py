import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, make_invoice
from supportdesk.domain.errors import PermanentBillingError
from supportdesk.domain.models import (
    BillingRecordStatus,
    NotificationType,
    RetryOutcome,
    SubscriptionStatus,
)
from supportdesk.services.billing_reconciler import BillingReconciler

SUSPENDED = NotificationType.SUBSCRIPTION_SUSPENDED.value
WARNING = NotificationType.PAYMENT_FAILED_WARNING.value


def _failed_record(persistence, subscription, ref, attempt_count, **kwargs):
    invoice = make_invoice(
        ref, subscription.external_subscription_ref, attempt_count=attempt_count, **kwargs
    )
    return persistence.create_billing_record(subscription.id, invoice)


def _paid_outcome(ref, subscription_ref, attempt_count):
    invoice = make_invoice(
        ref,
        subscription_ref,
        status=BillingRecordStatus.PAID,
        attempt_count=attempt_count,
        paid=True,
    )
    return RetryOutcome(success=True, status="paid", invoice=invoice)


# Failed payments ------------------------------------------------------------
def test_successful_retry_collects_and_reactivates(persistence, gateway, reconciler, notifier, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.PAST_DUE, external_ref="sub_1")
    record = _failed_record(persistence, subscription, "in_1", attempt_count=3)
    gateway.retry_outcomes["in_1"] = _paid_outcome("in_1", "sub_1", 3)

    summary = asyncio.run(reconciler.process_failed_payments())

    assert (summary.processed, summary.retried, summary.suspended, summary.notified) == (1, 1, 0, 0)
    assert persistence.get_billing_record(record.id).status is BillingRecordStatus.PAID
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.ACTIVE
    assert notifier.sent == []


def test_exhausted_attempts_suspend_without_retry(persistence, gateway, reconciler, notifier, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.PAST_DUE, external_ref="sub_1")
    _failed_record(persistence, subscription, "in_1", attempt_count=4)

    summary = asyncio.run(reconciler.process_failed_payments())

    assert summary.suspended == 1
    assert summary.notified == 1
    assert gateway.retry_calls == []
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.SUSPENDED
    assert len(notifier.of_type(SUSPENDED)) == 1


def test_suspension_is_idempotent_across_runs(persistence, reconciler, notifier, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.PAST_DUE, external_ref="sub_1")
    _failed_record(persistence, subscription, "in_1", attempt_count=5)

    asyncio.run(reconciler.process_failed_payments())
    second = asyncio.run(reconciler.process_failed_payments())

    assert second.processed == 1
    assert second.suspended == 0
    assert second.notified == 0
    assert len(notifier.of_type(SUSPENDED)) == 1


def test_active_subscription_passes_through_past_due_to_suspension(persistence, reconciler, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_ref="sub_1")
    _failed_record(persistence, subscription, "in_1", attempt_count=4)

    summary = asyncio.run(reconciler.process_failed_payments())

    assert summary.suspended == 1
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.SUSPENDED


def test_warning_sent_once_when_attempts_reach_two(persistence, gateway, reconciler, notifier, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_ref="sub_1")
    record = _failed_record(persistence, subscription, "in_1", attempt_count=1)

    first = asyncio.run(reconciler.process_failed_payments())
    assert first.notified == 1
    assert persistence.get_billing_record(record.id).attempt_count == 2
    assert persistence.get_billing_record(record.id).failure_reason == "card_declined"
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.PAST_DUE

    second = asyncio.run(reconciler.process_failed_payments())
    assert second.notified == 0
    assert persistence.get_billing_record(record.id).attempt_count == 3
    assert len(notifier.of_type(WARNING)) == 1
    assert len(gateway.retry_calls) == 2


def test_warning_ledger_blocks_duplicate_for_same_record(persistence, reconciler, notifier, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.PAST_DUE, external_ref="sub_1")
    record = _failed_record(persistence, subscription, "in_1", attempt_count=1)
    persistence.claim_notification(f"{WARNING}:{record.id}", subscription.tenant_id, WARNING)

    summary = asyncio.run(reconciler.process_failed_payments())

    assert summary.notified == 0
    assert notifier.of_type(WARNING) == []


def test_one_failing_record_does_not_abort_the_pass(persistence, gateway, reconciler, make_subscription):
    first = make_subscription("acme", status=SubscriptionStatus.PAST_DUE, external_ref="sub_1")
    second = make_subscription("globex", status=SubscriptionStatus.PAST_DUE, external_ref="sub_2")
    _failed_record(persistence, first, "in_1", attempt_count=1)
    _failed_record(persistence, second, "in_2", attempt_count=1)
    gateway.fail_on["in_1"] = RuntimeError("boom")
    gateway.retry_outcomes["in_2"] = _paid_outcome("in_2", "sub_2", 1)

    summary = asyncio.run(reconciler.process_failed_payments())

    assert summary.processed == 2
    assert summary.errors == 1
    assert summary.retried == 1
    assert persistence.get_subscription(second.id).status is SubscriptionStatus.ACTIVE


def test_gateway_timeout_is_counted_not_recorded(persistence, gateway, reconciler, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.PAST_DUE, external_ref="sub_1")
    record = _failed_record(persistence, subscription, "in_1", attempt_count=1)
    gateway.hang_on.add("in_1")

    summary = asyncio.run(reconciler.process_failed_payments())

    assert summary.errors == 1
    assert persistence.get_billing_record(record.id).attempt_count == 1


def test_attempt_mirrored_by_sync_still_triggers_warning(
    persistence, gateway, reconciler, notifier, make_subscription, monkeypatch
):
    subscription = make_subscription(status=SubscriptionStatus.ACTIVE, external_ref="sub_1")
    record = _failed_record(persistence, subscription, "in_1", attempt_count=1)
    # The gateway counts its own declined attempt; a sync lands before the retry result is recorded.
    gateway.invoices["sub_1"] = [make_invoice("in_1", "sub_1", attempt_count=2)]
    decline = gateway.retry_invoice

    async def decline_then_sync(external_invoice_ref):
        outcome = await decline(external_invoice_ref)
        await reconciler.sync_billing_records()
        return outcome

    monkeypatch.setattr(gateway, "retry_invoice", decline_then_sync)

    summary = asyncio.run(reconciler.process_failed_payments())

    assert summary.notified == 1
    assert summary.errors == 0
    assert persistence.get_billing_record(record.id).attempt_count == 2
    assert len(notifier.of_type(WARNING)) == 1
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.PAST_DUE


def test_cancelled_subscription_invoices_are_not_retried(persistence, gateway, reconciler, notifier, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.CANCELLED, external_ref="sub_1")
    _failed_record(persistence, subscription, "in_1", attempt_count=1)
    _failed_record(persistence, subscription, "in_2", attempt_count=4)

    for _ in range(2):
        summary = asyncio.run(reconciler.process_failed_payments())
        assert (summary.processed, summary.notified, summary.errors) == (0, 0, 0)

    assert gateway.retry_calls == []
    assert notifier.sent == []
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.CANCELLED


def test_trial_with_exhausted_invoice_is_left_to_the_trial_sweep(
    persistence, gateway, reconciler, notifier, make_subscription
):
    subscription = make_subscription(status=SubscriptionStatus.TRIAL, external_ref="sub_1")
    _failed_record(persistence, subscription, "in_1", attempt_count=4)

    summary = asyncio.run(reconciler.process_failed_payments())

    assert (summary.processed, summary.suspended, summary.errors) == (0, 0, 0)
    assert gateway.retry_calls == []
    assert notifier.sent == []
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.TRIAL


def test_uncollectible_invoice_keeps_past_due_and_escalates(persistence, gateway, reconciler, notifier, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.PAST_DUE, external_ref="sub_1")
    _failed_record(persistence, subscription, "in_1", attempt_count=3)
    gateway.invoices["sub_1"] = [
        make_invoice("in_1", "sub_1", status=BillingRecordStatus.UNCOLLECTIBLE, attempt_count=4)
    ]

    asyncio.run(reconciler.sync_billing_records())
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.PAST_DUE

    summary = asyncio.run(reconciler.process_failed_payments())

    assert summary.suspended == 1
    assert gateway.retry_calls == []
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.SUSPENDED
    assert len(notifier.of_type(SUSPENDED)) == 1


def test_without_gateway_only_suspension_runs(persistence, subscription_service, notifier, clock, make_subscription):
    reconciler = BillingReconciler(persistence, None, subscription_service, notifier, clock=clock)
    retry = make_subscription("acme", status=SubscriptionStatus.PAST_DUE, external_ref="sub_1")
    suspend = make_subscription("globex", status=SubscriptionStatus.PAST_DUE, external_ref="sub_2")
    _failed_record(persistence, retry, "in_1", attempt_count=1)
    _failed_record(persistence, suspend, "in_2", attempt_count=4)

    summary = asyncio.run(reconciler.process_failed_payments())

    assert summary.retried == 0
    assert summary.suspended == 1
    assert persistence.get_subscription(retry.id).status is SubscriptionStatus.PAST_DUE
    assert asyncio.run(reconciler.sync_billing_records()).synced == 0


def test_settled_records_reject_updates(persistence, make_subscription):
    subscription = make_subscription(external_ref="sub_1")
    record = persistence.create_billing_record(
        subscription.id, make_invoice("in_1", "sub_1", status=BillingRecordStatus.PAID, paid=True)
    )
    with pytest.raises(PermanentBillingError):
        persistence.update_billing_record(record.id, status=BillingRecordStatus.OPEN)
    assert persistence.record_payment_attempt(record.id, 0, "late") is None


# Gateway sync ---------------------------------------------------------------
def test_sync_survives_a_timed_out_subscription(persistence, gateway, reconciler, make_subscription):
    for number in range(5):
        ref = f"sub_{number}"
        make_subscription(f"tenant-{number}", external_ref=ref)
        gateway.invoices[ref] = [
            make_invoice(f"in_{number}_a", ref, status=BillingRecordStatus.PAID, paid=True),
            make_invoice(f"in_{number}_b", ref, created=NOW - timedelta(days=1)),
        ]
    gateway.hang_on.add("sub_2")

    summary = asyncio.run(reconciler.sync_billing_records())

    assert summary.errors == 1
    assert summary.synced == 8
    assert summary.created == 8
    assert persistence.get_billing_record_by_external_ref("in_2_a") is None
    assert persistence.get_billing_record_by_external_ref("in_4_b") is not None


def test_sync_is_idempotent(persistence, gateway, reconciler, make_subscription):
    make_subscription(external_ref="sub_1")
    gateway.invoices["sub_1"] = [make_invoice("in_1", "sub_1"), make_invoice("in_2", "sub_1")]

    first = asyncio.run(reconciler.sync_billing_records())
    second = asyncio.run(reconciler.sync_billing_records())

    assert (first.created, first.updated) == (2, 0)
    assert (second.synced, second.created, second.updated) == (2, 0, 0)


def test_sync_applies_gateway_changes_and_derives_status(persistence, gateway, reconciler, make_subscription):
    subscription = make_subscription(external_ref="sub_1")
    gateway.invoices["sub_1"] = [make_invoice("in_1", "sub_1", attempt_count=1)]
    asyncio.run(reconciler.sync_billing_records())
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.PAST_DUE

    gateway.invoices["sub_1"] = [
        make_invoice("in_1", "sub_1", status=BillingRecordStatus.PAID, attempt_count=1, paid=True)
    ]
    summary = asyncio.run(reconciler.sync_billing_records())

    assert summary.updated == 1
    record = persistence.get_billing_record_by_external_ref("in_1")
    assert record.status is BillingRecordStatus.PAID
    assert record.amount_remaining == 0
    assert persistence.get_subscription(subscription.id).status is SubscriptionStatus.ACTIVE


def test_sync_never_reopens_settled_records(persistence, gateway, reconciler, make_subscription):
    make_subscription(external_ref="sub_1")
    gateway.invoices["sub_1"] = [make_invoice("in_1", "sub_1", status=BillingRecordStatus.PAID, paid=True)]
    asyncio.run(reconciler.sync_billing_records())

    gateway.invoices["sub_1"] = [make_invoice("in_1", "sub_1", status=BillingRecordStatus.OPEN)]
    summary = asyncio.run(reconciler.sync_billing_records())

    assert summary.updated == 0
    assert persistence.get_billing_record_by_external_ref("in_1").status is BillingRecordStatus.PAID


def test_sync_rejects_invoice_of_another_subscription(persistence, gateway, reconciler, make_subscription):
    make_subscription(external_ref="sub_1")
    gateway.invoices["sub_1"] = [make_invoice("in_1", "sub_other"), make_invoice("in_2", "sub_1")]

    summary = asyncio.run(reconciler.sync_billing_records())

    assert summary.errors == 1
    assert summary.synced == 1
    assert persistence.get_billing_record_by_external_ref("in_1") is None


def test_sync_skips_cancelled_and_unlinked_subscriptions(gateway, reconciler, make_subscription):
    make_subscription("acme", status=SubscriptionStatus.CANCELLED, external_ref="sub_1")
    make_subscription("globex")
    asyncio.run(reconciler.sync_billing_records())
    assert gateway.list_calls == []


# Retention ------------------------------------------------------------------
def test_cleanup_only_removes_old_settled_records(persistence, reconciler, make_subscription):
    subscription = make_subscription(external_ref="sub_1")
    old = NOW - timedelta(days=3 * 365)
    recent = NOW - timedelta(days=365)
    for ref, status, created in [
        ("old_paid", BillingRecordStatus.PAID, old),
        ("old_void", BillingRecordStatus.VOID, old),
        ("old_open", BillingRecordStatus.OPEN, old),
        ("old_draft", BillingRecordStatus.DRAFT, old),
        ("old_uncollectible", BillingRecordStatus.UNCOLLECTIBLE, old),
        ("recent_paid", BillingRecordStatus.PAID, recent),
    ]:
        persistence.create_billing_record(
            subscription.id, make_invoice(ref, "sub_1", status=status, created=created)
        )

    summary = asyncio.run(reconciler.cleanup_old_billing_records())

    assert summary.deleted == 2
    remaining = {record.external_invoice_ref for record in persistence.list_billing_records(subscription.id)}
    assert remaining == {"old_open", "old_draft", "old_uncollectible", "recent_paid"}


# Reporting ------------------------------------------------------------------
def test_monthly_report_defaults_to_previous_month(persistence, reconciler, clock, make_subscription):
    clock.now = datetime(2024, 2, 10, tzinfo=timezone.utc)
    subscription = make_subscription("acme", external_ref="sub_1")
    make_subscription("globex", status=SubscriptionStatus.TRIAL)
    february = datetime(2024, 2, 12, tzinfo=timezone.utc)
    persistence.create_billing_record(
        subscription.id,
        make_invoice("in_paid", "sub_1", status=BillingRecordStatus.PAID, paid=True, created=february),
    )
    persistence.create_billing_record(
        subscription.id, make_invoice("in_open", "sub_1", amount_due=1000, attempt_count=1, created=february)
    )
    persistence.create_billing_record(
        subscription.id,
        make_invoice("in_bad", "sub_1", status=BillingRecordStatus.UNCOLLECTIBLE, amount_due=500, created=february),
    )
    persistence.create_billing_record(
        subscription.id, make_invoice("in_march", "sub_1", created=datetime(2024, 3, 2, tzinfo=timezone.utc))
    )
    clock.now = NOW

    report = asyncio.run(reconciler.generate_monthly_billing_report())

    assert report["period"]["year"] == 2024
    assert report["period"]["month"] == 2
    assert report["revenue"]["total_revenue"] == 2900
    assert report["revenue"]["paid_invoices"] == 1
    assert report["revenue"]["pending_revenue"] == 1000
    assert report["revenue"]["failed_payments"] == 2
    assert report["failed_payments"] == {"count": 2, "total_amount": 1500}
    assert report["subscriptions"]["new"] == 2
    assert report["subscriptions"]["active"] == 1
    assert report["subscriptions"]["trial"] == 1


def test_monthly_report_in_january_covers_last_december(reconciler, clock):
    clock.now = datetime(2024, 1, 5, tzinfo=timezone.utc)
    report = asyncio.run(reconciler.generate_monthly_billing_report())
    assert (report["period"]["year"], report["period"]["month"]) == (2023, 12)
    assert report["period"]["end_date"] == "2024-01-01T00:00:00+00:00"


# Orchestration --------------------------------------------------------------
def test_run_all_jobs_isolates_failures(reconciler, monkeypatch):
    async def broken_sync():
        raise RuntimeError("gateway exploded")

    monkeypatch.setattr(reconciler, "sync_billing_records", broken_sync)

    results = asyncio.run(reconciler.run_all_jobs())

    assert results["sync_results"] == {"error": "gateway exploded"}
    assert results["failed_payments"]["processed"] == 0
    assert results["cleanup"] == {"deleted": 0}
