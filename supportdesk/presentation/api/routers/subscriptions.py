from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ....core.dependencies import (
    get_persistence_gateway,
    get_subscription_service,
    get_trial_manager,
    get_usage_tracker,
)
from ....domain.errors import SubscriptionError
from ....domain.models import Plan, Subscription, UsageEvent, User
from ....domain.ports.persistence import PersistenceGateway
from ....services.subscription_service import SubscriptionService
from ....services.trial_manager import TrialManager
from ....services.usage_tracker import UsageTracker
from ...api.dependencies import require_admin_user, require_tenant_id
from ...api.schemas.subscriptions import (
    CancelSubscriptionRequest,
    CancelTrialRequest,
    ConvertTrialRequest,
    ExtendTrialRequest,
    StartTrialRequest,
)

router = APIRouter(prefix="/api/subscriptions", tags=["Subscriptions"])


@router.get("/plans")
def list_plans(persistence: PersistenceGateway = Depends(get_persistence_gateway)) -> Dict[str, Any]:
    plans = persistence.list_active_plans()
    return {"items": [_serialize_plan(plan) for plan in plans], "count": len(plans)}


@router.get("/tenants/{tenant_id}")
def get_tenant_subscription(
    tenant_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
) -> Dict[str, Any]:
    try:
        subscription = service.get_tenant_subscription(tenant_id)
    except SubscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return _serialize_subscription(subscription)


@router.get("/tenants/{tenant_id}/usage")
def get_tenant_usage(
    tenant_id: str,
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> Dict[str, Any]:
    try:
        limit_status = tracker.check_limit_status(tenant_id)
    except SubscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return {"tenant_id": tenant_id, **limit_status.to_dict()}


@router.get("/usage/period/{period}")
def get_usage_for_period(
    period: str,
    tenant_id: str = Depends(require_tenant_id),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> Dict[str, Any]:
    try:
        usage = tracker.get_usage_for_period(tenant_id, period)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"tenant_id": tenant_id, "period": period, "usage": usage.to_dict()}


@router.get("/usage/activity")
def get_recent_activity(
    limit: int = Query(default=50, ge=1, le=500),
    tenant_id: str = Depends(require_tenant_id),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> Dict[str, Any]:
    events = tracker.get_recent_activity(tenant_id, limit)
    return {"items": [_serialize_event(event) for event in events], "count": len(events)}


@router.get("/usage/warnings")
def get_usage_warnings(
    tenant_id: str = Depends(require_tenant_id),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> Dict[str, Any]:
    try:
        return tracker.get_usage_warnings(tenant_id)
    except SubscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.get("/usage/can-create-ticket")
def can_create_ticket(
    tenant_id: str = Depends(require_tenant_id),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> Dict[str, Any]:
    return tracker.can_create_ticket(tenant_id).to_dict()


@router.get("/usage/can-complete-ticket")
def can_complete_ticket(
    tenant_id: str = Depends(require_tenant_id),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> Dict[str, Any]:
    return tracker.can_complete_ticket(tenant_id).to_dict()


@router.post("/trials", status_code=status.HTTP_201_CREATED)
def start_trial(
    payload: StartTrialRequest,
    trials: TrialManager = Depends(get_trial_manager),
    persistence: PersistenceGateway = Depends(get_persistence_gateway),
) -> Dict[str, Any]:
    if payload.contact_email:
        persistence.set_tenant_contact(payload.tenant_id, payload.contact_email)
    try:
        subscription = trials.start_trial(
            payload.tenant_id,
            payload.plan_slug,
            trial_days=payload.trial_days,
            send_welcome_email=payload.send_welcome_email,
            metadata=payload.metadata,
        )
    except SubscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return _serialize_subscription(subscription)


@router.post("/{subscription_id}/convert")
def convert_trial(
    subscription_id: int,
    payload: ConvertTrialRequest,
    trials: TrialManager = Depends(get_trial_manager),
) -> Dict[str, Any]:
    try:
        subscription = trials.convert_trial_to_paid(
            subscription_id,
            payment_method_ref=payload.payment_method_ref,
            external_customer_ref=payload.external_customer_ref,
            external_subscription_ref=payload.external_subscription_ref,
            send_welcome_email=payload.send_welcome_email,
        )
    except SubscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return _serialize_subscription(subscription)


@router.post("/{subscription_id}/cancel-trial")
def cancel_trial(
    subscription_id: int,
    payload: CancelTrialRequest,
    trials: TrialManager = Depends(get_trial_manager),
) -> Dict[str, Any]:
    try:
        subscription = trials.cancel_trial(subscription_id, payload.reason)
    except SubscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return _serialize_subscription(subscription)


@router.post("/{subscription_id}/extend-trial")
def extend_trial(
    subscription_id: int,
    payload: ExtendTrialRequest,
    _: User = Depends(require_admin_user),
    trials: TrialManager = Depends(get_trial_manager),
) -> Dict[str, Any]:
    try:
        subscription = trials.extend_trial(subscription_id, payload.additional_days, payload.reason)
    except SubscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return _serialize_subscription(subscription)


@router.get("/{subscription_id}/trial-status")
def get_trial_status(
    subscription_id: int,
    trials: TrialManager = Depends(get_trial_manager),
) -> Dict[str, Any]:
    try:
        trial_status = trials.get_trial_status(subscription_id)
    except SubscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return {key: _isoformat(value) for key, value in trial_status.items()}


@router.post("/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: int,
    payload: CancelSubscriptionRequest,
    service: SubscriptionService = Depends(get_subscription_service),
) -> Dict[str, Any]:
    try:
        subscription = service.cancel_subscription(
            subscription_id, at_period_end=payload.at_period_end, reason=payload.reason
        )
    except SubscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return _serialize_subscription(subscription)


@router.get("/admin/stats")
def get_subscription_stats(
    _: User = Depends(require_admin_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> Dict[str, Any]:
    return service.get_subscription_stats()


@router.get("/admin/users-approaching-limits")
def get_users_approaching_limits(
    threshold: float = Query(default=75, ge=50, le=100),
    _: User = Depends(require_admin_user),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> Dict[str, Any]:
    users = tracker.get_users_approaching_limits(threshold)
    return {"users": users, "threshold": threshold, "count": len(users)}


def _isoformat(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def _serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "tenant_id": subscription.tenant_id,
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
        "current_period_start": _isoformat(subscription.current_period_start),
        "current_period_end": _isoformat(subscription.current_period_end),
        "trial_start": _isoformat(subscription.trial_start),
        "trial_end": _isoformat(subscription.trial_end),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "cancelled_at": _isoformat(subscription.cancelled_at),
        "external_customer_ref": subscription.external_customer_ref,
        "external_subscription_ref": subscription.external_subscription_ref,
        "is_serviceable": subscription.is_serviceable(),
        "metadata": subscription.metadata,
    }


def _serialize_plan(plan: Plan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "slug": plan.slug,
        "name": plan.name,
        "description": plan.description,
        "price": plan.price,
        "currency": plan.currency,
        "billing_interval": plan.billing_interval,
        "trial_days": plan.trial_days,
        "limits": {
            "active_tickets": plan.limits.active_tickets,
            "completed_tickets": plan.limits.completed_tickets,
            "total_tickets": plan.limits.total_tickets,
            "storage_quota_gb": plan.limits.storage_quota_gb,
        },
        "features": plan.features,
        "sort_order": plan.sort_order,
    }


def _serialize_event(event: UsageEvent) -> Dict[str, Optional[Any]]:
    return {
        "id": event.id,
        "ticket_id": event.ticket_id,
        "action": event.action.value,
        "previous_status": event.previous_status,
        "new_status": event.new_status,
        "metadata": event.metadata,
        "occurred_at": _isoformat(event.occurred_at),
    }
