"""Ticket usage accounting and plan-limit gating."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Tuple, Union

from cachetools import TTLCache

from ..core.clock import month_bounds, parse_period
from ..domain.errors import PlanNotFoundError, SubscriptionNotFoundError
from ..domain.models import (
    SERVICEABLE_STATUSES,
    UNLIMITED,
    GateDecision,
    LimitStatus,
    PercentageUsed,
    Plan,
    PlanLimits,
    TicketAction,
    UsageEvent,
    UsageSnapshot,
)
from ..domain.ports.persistence import PersistenceGateway

logger = logging.getLogger(__name__)

REASON_NO_SUBSCRIPTION = "no_subscription"
REASON_SUBSCRIPTION_INACTIVE = "subscription_inactive"
REASON_PLAN_NOT_FOUND = "plan_not_found"
REASON_USAGE_UNAVAILABLE = "usage_unavailable"
REASON_ACTIVE_LIMIT = "active_ticket_limit_reached"
REASON_TOTAL_LIMIT = "total_ticket_limit_reached"
REASON_COMPLETED_LIMIT = "completed_ticket_limit_reached"

CRITICAL_THRESHOLD = 90.0

_COMPLETED_STATUSES = frozenset({"completed", "resolved", "closed"})


def percentage_of(used: int, limit: int) -> float:
    """Share of ``limit`` consumed; unlimited reports 0, a zero limit reports 100."""
    if limit == UNLIMITED:
        return 0.0
    if limit <= 0:
        return 100.0
    return round(min(100.0, used * 100.0 / limit), 2)


def limit_reached(used: int, limit: int) -> bool:
    return limit != UNLIMITED and used >= limit


def build_limit_status(limits: PlanLimits, usage: UsageSnapshot, near_threshold: float) -> LimitStatus:
    percentage = PercentageUsed(
        active=percentage_of(usage.active_tickets, limits.active_tickets),
        completed=percentage_of(usage.completed_tickets, limits.completed_tickets),
        total=percentage_of(usage.total_tickets, limits.total_tickets),
    )
    at_limit = (
        limit_reached(usage.active_tickets, limits.active_tickets)
        or limit_reached(usage.completed_tickets, limits.completed_tickets)
        or limit_reached(usage.total_tickets, limits.total_tickets)
    )
    return LimitStatus(
        is_at_limit=at_limit,
        is_near_limit=percentage.highest() >= near_threshold,
        percentage_used=percentage,
        limits=limits,
        current=usage,
    )


def action_for_status(new_status: str) -> TicketAction:
    status = (new_status or "").lower()
    if status in _COMPLETED_STATUSES:
        return TicketAction.COMPLETED
    if status == TicketAction.ARCHIVED.value:
        return TicketAction.ARCHIVED
    if status == TicketAction.DELETED.value:
        return TicketAction.DELETED
    return TicketAction.CREATED


class UsageTracker:
    """
    Answers "may this tenant create/complete a ticket?" against its plan limits.

    Gating always reads fresh counts from the ticket counter and fails closed:
    any read error yields a denial with a reason code instead of an exception.
    Reporting calls share a short-lived per-tenant snapshot cache which every
    ``record_*`` call invalidates.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        *,
        cache_ttl_seconds: int = 30,
        warning_threshold: float = 75.0,
        cache_size: int = 4096,
    ) -> None:
        self._persistence = persistence
        self._warning_threshold = float(warning_threshold)
        self._cache: TTLCache = TTLCache(maxsize=cache_size, ttl=max(cache_ttl_seconds, 1))
        self._cache_lock = threading.Lock()

    @property
    def warning_threshold(self) -> float:
        return self._warning_threshold

    # Gating -----------------------------------------------------------------
    def can_create_ticket(self, tenant_id: str) -> GateDecision:
        resolved = self._resolve_for_gate(tenant_id)
        if isinstance(resolved, GateDecision):
            return resolved
        plan, usage = resolved
        status = build_limit_status(plan.limits, usage, self._warning_threshold)
        if limit_reached(usage.active_tickets, plan.limits.active_tickets):
            return self._deny_limit(tenant_id, REASON_ACTIVE_LIMIT, "active", usage, status)
        if limit_reached(usage.total_tickets, plan.limits.total_tickets):
            return self._deny_limit(tenant_id, REASON_TOTAL_LIMIT, "total", usage, status)
        return GateDecision(allowed=True, usage=usage, limit_status=status)

    def can_complete_ticket(self, tenant_id: str) -> GateDecision:
        resolved = self._resolve_for_gate(tenant_id)
        if isinstance(resolved, GateDecision):
            return resolved
        plan, usage = resolved
        status = build_limit_status(plan.limits, usage, self._warning_threshold)
        if limit_reached(usage.completed_tickets, plan.limits.completed_tickets):
            return self._deny_limit(tenant_id, REASON_COMPLETED_LIMIT, "completed", usage, status)
        return GateDecision(allowed=True, usage=usage, limit_status=status)

    def _resolve_for_gate(self, tenant_id: str) -> Union[GateDecision, Tuple[Plan, UsageSnapshot]]:
        try:
            subscription = self._persistence.get_subscription_for_tenant(tenant_id)
        except Exception:
            logger.exception("Subscription lookup failed for tenant %s; denying", tenant_id)
            return GateDecision(allowed=False, reason=REASON_USAGE_UNAVAILABLE)
        if subscription is None:
            return GateDecision(allowed=False, reason=REASON_NO_SUBSCRIPTION)
        if subscription.status not in SERVICEABLE_STATUSES:
            return GateDecision(allowed=False, reason=REASON_SUBSCRIPTION_INACTIVE)

        try:
            plan = self._persistence.get_plan(subscription.plan_id)
        except Exception:
            logger.exception("Plan lookup failed for tenant %s; denying", tenant_id)
            return GateDecision(allowed=False, reason=REASON_USAGE_UNAVAILABLE)
        if plan is None:
            logger.error("Plan %s of tenant %s is missing; denying", subscription.plan_id, tenant_id)
            return GateDecision(allowed=False, reason=REASON_PLAN_NOT_FOUND)

        try:
            usage = self._persistence.get_usage(tenant_id)
        except Exception:
            logger.exception("Usage counts unavailable for tenant %s; denying", tenant_id)
            return GateDecision(allowed=False, reason=REASON_USAGE_UNAVAILABLE)
        with self._cache_lock:
            self._cache[tenant_id] = usage
        return plan, usage

    @staticmethod
    def _deny_limit(
        tenant_id: str,
        reason: str,
        limit_type: str,
        usage: UsageSnapshot,
        status: LimitStatus,
    ) -> GateDecision:
        logger.info("Tenant %s blocked: %s", tenant_id, reason)
        return GateDecision(
            allowed=False,
            reason=reason,
            limit_type=limit_type,
            usage=usage,
            limit_status=status,
        )

    # Reporting --------------------------------------------------------------
    def get_current_usage(self, tenant_id: str) -> UsageSnapshot:
        with self._cache_lock:
            cached = self._cache.get(tenant_id)
        if cached is not None:
            return cached
        usage = self._persistence.get_usage(tenant_id)
        with self._cache_lock:
            self._cache[tenant_id] = usage
        return usage

    def check_limit_status(self, tenant_id: str) -> LimitStatus:
        plan = self._plan_for_tenant(tenant_id)
        usage = self.get_current_usage(tenant_id)
        return build_limit_status(plan.limits, usage, self._warning_threshold)

    def get_usage_for_period(self, tenant_id: str, period: str) -> UsageSnapshot:
        year, month = parse_period(period)
        start, end = month_bounds(year, month)
        return self._persistence.get_usage_for_period(tenant_id, start, end)

    def get_recent_activity(self, tenant_id: str, limit: int = 50) -> List[UsageEvent]:
        return self._persistence.get_recent_activity(tenant_id, max(1, min(limit, 500)))

    def get_usage_warnings(self, tenant_id: str) -> Dict[str, Any]:
        plan = self._plan_for_tenant(tenant_id)
        status = build_limit_status(plan.limits, self.get_current_usage(tenant_id), self._warning_threshold)
        dimensions = (
            ("active", status.percentage_used.active, status.current.active_tickets, plan.limits.active_tickets),
            (
                "completed",
                status.percentage_used.completed,
                status.current.completed_tickets,
                plan.limits.completed_tickets,
            ),
            ("total", status.percentage_used.total, status.current.total_tickets, plan.limits.total_tickets),
        )
        warnings = []
        for kind, percentage, used, limit in dimensions:
            if limit == UNLIMITED or percentage < self._warning_threshold:
                continue
            warnings.append(
                {
                    "type": kind,
                    "percentage": percentage,
                    "severity": "critical" if percentage >= CRITICAL_THRESHOLD else "warning",
                    "message": (
                        f"You're using {round(percentage)}% of your {kind} ticket limit ({used}/{limit})"
                    ),
                }
            )

        result: Dict[str, Any] = {"has_warnings": bool(warnings), "warnings": warnings}
        if warnings:
            result["upgrade_message"] = (
                "Consider upgrading your plan to get higher limits and avoid interruptions."
            )
            result["suggested_plans"] = [
                candidate.slug
                for candidate in self._persistence.list_active_plans()
                if candidate.sort_order > plan.sort_order
            ]
        return result

    def get_users_approaching_limits(self, threshold_percent: Optional[float] = None) -> List[Dict[str, Any]]:
        """Scan serviceable subscriptions for tenants at or above ``threshold_percent`` (inclusive)."""
        threshold = self._warning_threshold if threshold_percent is None else float(threshold_percent)
        results: List[Dict[str, Any]] = []
        plans: Dict[int, Optional[Plan]] = {}
        for subscription in self._persistence.list_subscriptions(SERVICEABLE_STATUSES):
            try:
                if subscription.plan_id not in plans:
                    plans[subscription.plan_id] = self._persistence.get_plan(subscription.plan_id)
                plan = plans[subscription.plan_id]
                if plan is None or plan.limits.is_unlimited():
                    continue
                status = build_limit_status(
                    plan.limits, self.get_current_usage(subscription.tenant_id), threshold
                )
            except Exception:
                logger.exception(
                    "Failed to evaluate usage for tenant %s; skipping", subscription.tenant_id
                )
                continue
            if status.is_near_limit:
                results.append(
                    {
                        "tenant_id": subscription.tenant_id,
                        "subscription_id": subscription.id,
                        "plan": plan.slug,
                        "status": subscription.status.value,
                        "percentage_used": asdict(status.percentage_used),
                        "highest_percentage": status.percentage_used.highest(),
                        "is_at_limit": status.is_at_limit,
                    }
                )
        results.sort(key=lambda item: item["highest_percentage"], reverse=True)
        return results

    def _plan_for_tenant(self, tenant_id: str) -> Plan:
        subscription = self._persistence.get_subscription_for_tenant(tenant_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"for tenant {tenant_id}")
        plan = self._persistence.get_plan(subscription.plan_id)
        if plan is None:
            raise PlanNotFoundError(subscription.plan_id)
        return plan

    # Recording --------------------------------------------------------------
    def record_ticket_created(
        self, tenant_id: str, ticket_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> UsageEvent:
        return self._record(tenant_id, ticket_id, TicketAction.CREATED, None, "open", metadata)

    def record_ticket_status_change(
        self,
        tenant_id: str,
        ticket_id: str,
        previous_status: Optional[str],
        new_status: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageEvent:
        action = action_for_status(new_status)
        return self._record(tenant_id, ticket_id, action, previous_status, new_status, metadata)

    def record_ticket_archived(
        self, tenant_id: str, ticket_id: str, previous_status: Optional[str] = None
    ) -> UsageEvent:
        return self._record(
            tenant_id, ticket_id, TicketAction.ARCHIVED, previous_status, TicketAction.ARCHIVED.value, None
        )

    def record_ticket_restored(
        self, tenant_id: str, ticket_id: str, restored_status: str = "open"
    ) -> UsageEvent:
        action = action_for_status(restored_status)
        if action in (TicketAction.ARCHIVED, TicketAction.DELETED):
            raise ValueError(f"Cannot restore ticket {ticket_id} into status {restored_status!r}")
        return self._record(
            tenant_id,
            ticket_id,
            action,
            TicketAction.ARCHIVED.value,
            restored_status,
            {"restored": True},
        )

    def _record(
        self,
        tenant_id: str,
        ticket_id: str,
        action: TicketAction,
        previous_status: Optional[str],
        new_status: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> UsageEvent:
        event = self._persistence.record_usage_event(
            tenant_id,
            ticket_id,
            action,
            previous_status=previous_status,
            new_status=new_status,
            metadata=metadata,
        )
        self.invalidate(tenant_id)
        logger.debug("Recorded %s for ticket %s of tenant %s", action.value, ticket_id, tenant_id)
        return event

    def invalidate(self, tenant_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(tenant_id, None)
