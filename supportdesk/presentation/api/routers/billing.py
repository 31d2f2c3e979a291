from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ....core.dependencies import (
    get_billing_reconciler,
    get_job_scheduler,
    get_persistence_gateway,
)
from ....domain.models import BillingRecord, User
from ....domain.ports.persistence import PersistenceGateway
from ....services.billing_reconciler import BillingReconciler
from ....services.job_scheduler import BillingJobScheduler
from ...api.dependencies import require_admin_user
from ...api.schemas.billing import RunJobsRequest

router = APIRouter(prefix="/api/billing", tags=["Billing"])


@router.post("/run-jobs")
async def run_jobs(
    payload: RunJobsRequest,
    _: User = Depends(require_admin_user),
    scheduler: BillingJobScheduler = Depends(get_job_scheduler),
) -> Dict[str, Any]:
    try:
        results = await scheduler.run_job(payload.job_type, year=payload.year, month=payload.month)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"job_type": payload.job_type, "results": results}


@router.get("/report")
async def get_monthly_report(
    year: Optional[int] = Query(default=None, ge=2000, le=9999),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    _: User = Depends(require_admin_user),
    reconciler: BillingReconciler = Depends(get_billing_reconciler),
) -> Dict[str, Any]:
    return await reconciler.generate_monthly_billing_report(year, month)


@router.get("/subscriptions/{subscription_id}/records")
def list_billing_records(
    subscription_id: int,
    _: User = Depends(require_admin_user),
    persistence: PersistenceGateway = Depends(get_persistence_gateway),
) -> Dict[str, Any]:
    if persistence.get_subscription(subscription_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found.")
    records = persistence.list_billing_records(subscription_id)
    return {"items": [_serialize_record(record) for record in records], "count": len(records)}


@router.get("/scheduler")
def get_scheduler_status(
    _: User = Depends(require_admin_user),
    scheduler: BillingJobScheduler = Depends(get_job_scheduler),
) -> Dict[str, Any]:
    return {"running": scheduler.is_running, "last_run": scheduler.last_run()}


def _serialize_record(record: BillingRecord) -> Dict[str, Any]:
    def iso(value):
        return value.isoformat() if value else None

    return {
        "id": record.id,
        "external_invoice_ref": record.external_invoice_ref,
        "status": record.status.value,
        "amount_due": record.amount_due,
        "amount_paid": record.amount_paid,
        "amount_remaining": record.amount_remaining,
        "currency": record.currency,
        "billing_date": iso(record.billing_date),
        "due_date": iso(record.due_date),
        "paid_at": iso(record.paid_at),
        "attempt_count": record.attempt_count,
        "failure_reason": record.failure_reason,
        "invoice_number": record.invoice_number,
        "hosted_invoice_url": record.hosted_invoice_url,
    }
