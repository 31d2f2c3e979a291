import sqlite3

import pytest

from supportdesk.domain.errors import SubscriptionNotFoundError
from supportdesk.domain.models import PlanLimits, SubscriptionStatus, TicketAction
from supportdesk.services.usage_tracker import (
    REASON_ACTIVE_LIMIT,
    REASON_COMPLETED_LIMIT,
    REASON_NO_SUBSCRIPTION,
    REASON_SUBSCRIPTION_INACTIVE,
    REASON_TOTAL_LIMIT,
    REASON_USAGE_UNAVAILABLE,
    action_for_status,
    percentage_of,
)


@pytest.fixture
def hundred_plan(persistence):
    return persistence.create_plan(
        "hundred", "Hundred", 1000, PlanLimits(100, 1000, 1000), sort_order=10
    )


def _create_tickets(tracker, tenant_id, count, start=0):
    for number in range(start, start + count):
        tracker.record_ticket_created(tenant_id, f"T-{number}")


def test_can_create_ticket_until_active_limit(usage_tracker, make_subscription, hundred_plan):
    make_subscription("acme", "hundred")
    _create_tickets(usage_tracker, "acme", 99)
    decision = usage_tracker.can_create_ticket("acme")
    assert decision.allowed
    assert decision.usage.active_tickets == 99

    _create_tickets(usage_tracker, "acme", 1, start=99)
    decision = usage_tracker.can_create_ticket("acme")
    assert not decision.allowed
    assert decision.reason == REASON_ACTIVE_LIMIT
    assert decision.limit_type == "active"


def test_total_limit_blocks_creation(persistence, usage_tracker, make_subscription):
    persistence.create_plan("tiny", "Tiny", 0, PlanLimits(5, 10, 3))
    make_subscription("acme", "tiny")
    _create_tickets(usage_tracker, "acme", 3)
    decision = usage_tracker.can_create_ticket("acme")
    assert not decision.allowed
    assert decision.reason == REASON_TOTAL_LIMIT


def test_zero_limit_denies_everything(persistence, usage_tracker, make_subscription):
    persistence.create_plan("closed", "Closed", 0, PlanLimits(0, 0, 0))
    make_subscription("acme", "closed")
    assert not usage_tracker.can_create_ticket("acme").allowed
    assert usage_tracker.can_complete_ticket("acme").reason == REASON_COMPLETED_LIMIT
    assert usage_tracker.check_limit_status("acme").percentage_used.active == 100.0


def test_unlimited_plan_never_blocks(usage_tracker, make_subscription):
    make_subscription("acme", "enterprise")
    _create_tickets(usage_tracker, "acme", 25)
    decision = usage_tracker.can_create_ticket("acme")
    assert decision.allowed
    status = usage_tracker.check_limit_status("acme")
    assert not status.is_at_limit
    assert status.percentage_used.highest() == 0.0


def test_completed_tickets_count_against_completed_limit(persistence, usage_tracker, make_subscription):
    persistence.create_plan("small", "Small", 0, PlanLimits(10, 2, 20))
    make_subscription("acme", "small")
    _create_tickets(usage_tracker, "acme", 3)
    usage_tracker.record_ticket_status_change("acme", "T-0", "open", "resolved")
    usage_tracker.record_ticket_status_change("acme", "T-1", "open", "closed")

    usage = usage_tracker.get_current_usage("acme")
    assert usage.active_tickets == 1
    assert usage.completed_tickets == 2
    assert usage.total_tickets == 3
    assert usage_tracker.can_complete_ticket("acme").reason == REASON_COMPLETED_LIMIT


def test_archived_tickets_leave_active_counts(usage_tracker, make_subscription):
    make_subscription("acme")
    _create_tickets(usage_tracker, "acme", 2)
    usage_tracker.record_ticket_archived("acme", "T-0", "open")
    usage = usage_tracker.get_current_usage("acme")
    assert usage.active_tickets == 1
    assert usage.archived_tickets == 1

    usage_tracker.record_ticket_restored("acme", "T-0")
    assert usage_tracker.get_current_usage("acme").active_tickets == 2


def test_restore_into_archived_status_is_rejected(usage_tracker):
    with pytest.raises(ValueError):
        usage_tracker.record_ticket_restored("acme", "T-0", "archived")


def test_gate_without_subscription(usage_tracker):
    decision = usage_tracker.can_create_ticket("ghost")
    assert not decision.allowed
    assert decision.reason == REASON_NO_SUBSCRIPTION


@pytest.mark.parametrize("status", [SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED])
def test_gate_denies_unserviceable_subscription(usage_tracker, make_subscription, status):
    make_subscription("acme", status=status)
    decision = usage_tracker.can_create_ticket("acme")
    assert not decision.allowed
    assert decision.reason == REASON_SUBSCRIPTION_INACTIVE


def test_past_due_tenant_keeps_service(usage_tracker, make_subscription):
    make_subscription("acme", status=SubscriptionStatus.PAST_DUE)
    assert usage_tracker.can_create_ticket("acme").allowed


def test_gate_fails_closed_when_counts_unavailable(persistence, usage_tracker, make_subscription, monkeypatch):
    make_subscription("acme")

    def broken(tenant_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(persistence, "get_usage", broken)
    decision = usage_tracker.can_create_ticket("acme")
    assert not decision.allowed
    assert decision.reason == REASON_USAGE_UNAVAILABLE
    assert not usage_tracker.can_complete_ticket("acme").allowed


def test_gate_reads_fresh_counts_despite_cache(persistence, usage_tracker, make_subscription, hundred_plan):
    make_subscription("acme", "hundred")
    _create_tickets(usage_tracker, "acme", 99)
    assert usage_tracker.get_current_usage("acme").active_tickets == 99
    # Written straight to the store, bypassing the tracker's invalidation.
    persistence.record_usage_event("acme", "T-99", TicketAction.CREATED)
    assert not usage_tracker.can_create_ticket("acme").allowed


def test_usage_warnings_and_suggestions(usage_tracker, make_subscription):
    make_subscription("acme", "free-tier")
    _create_tickets(usage_tracker, "acme", 8)
    result = usage_tracker.get_usage_warnings("acme")
    assert result["has_warnings"]
    active = [warning for warning in result["warnings"] if warning["type"] == "active"][0]
    assert active["percentage"] == 80.0
    assert active["severity"] == "warning"
    assert result["suggested_plans"] == ["starter", "professional", "business", "enterprise"]

    _create_tickets(usage_tracker, "acme", 1, start=8)
    result = usage_tracker.get_usage_warnings("acme")
    active = [warning for warning in result["warnings"] if warning["type"] == "active"][0]
    assert active["severity"] == "critical"


def test_no_warnings_below_threshold(usage_tracker, make_subscription):
    make_subscription("acme", "starter")
    _create_tickets(usage_tracker, "acme", 3)
    assert usage_tracker.get_usage_warnings("acme") == {"has_warnings": False, "warnings": []}


def test_usage_warnings_require_subscription(usage_tracker):
    with pytest.raises(SubscriptionNotFoundError):
        usage_tracker.get_usage_warnings("ghost")


def test_users_approaching_limits_sorted(usage_tracker, make_subscription):
    make_subscription("acme", "free-tier")
    make_subscription("globex", "free-tier")
    make_subscription("initech", "enterprise")
    _create_tickets(usage_tracker, "acme", 8)
    for number in range(10):
        usage_tracker.record_ticket_created("globex", f"G-{number}")
    _create_tickets(usage_tracker, "initech", 40)

    results = usage_tracker.get_users_approaching_limits(75)
    assert [item["tenant_id"] for item in results] == ["globex", "acme"]
    assert results[0]["is_at_limit"]
    assert results[0]["percentage_used"]["active"] == 100.0


def test_usage_for_period_filters_by_month(usage_tracker, clock, make_subscription):
    make_subscription("acme")
    _create_tickets(usage_tracker, "acme", 2)
    clock.advance(days=31)
    _create_tickets(usage_tracker, "acme", 1, start=2)
    assert usage_tracker.get_usage_for_period("acme", "2024-03").active_tickets == 2
    assert usage_tracker.get_usage_for_period("acme", "2024-04").active_tickets == 1
    with pytest.raises(ValueError):
        usage_tracker.get_usage_for_period("acme", "March")


def test_recent_activity_is_newest_first(usage_tracker):
    _create_tickets(usage_tracker, "acme", 3)
    events = usage_tracker.get_recent_activity("acme", 2)
    assert [event.ticket_id for event in events] == ["T-2", "T-1"]


def test_percentage_helpers():
    assert percentage_of(5, -1) == 0.0
    assert percentage_of(1, 0) == 100.0
    assert percentage_of(1, 3) == 33.33
    assert percentage_of(12, 10) == 100.0
    assert action_for_status("Resolved") is TicketAction.COMPLETED
    assert action_for_status("in_progress") is TicketAction.CREATED


def test_usage_exactly_at_threshold_counts_as_approaching(usage_tracker, make_subscription):
    make_subscription("acme", "free-tier")
    _create_tickets(usage_tracker, "acme", 8)

    assert [item["tenant_id"] for item in usage_tracker.get_users_approaching_limits(80)] == ["acme"]
    assert usage_tracker.get_users_approaching_limits(81) == []
