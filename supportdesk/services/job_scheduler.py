from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, List, Optional

from ..core.clock import Clock, utcnow
from ..domain.ports.persistence import SettingsRepository
from .billing_reconciler import BillingReconciler
from .subscription_service import SubscriptionService
from .trial_manager import TrialManager

logger = logging.getLogger(__name__)

JOB_TYPES = (
    "failed-payments",
    "sync-records",
    "cleanup",
    "monthly-report",
    "trials",
    "period-end",
    "all",
)

SETTING_LAST_RUN = "billing_jobs_last_run"


class BillingJobScheduler:
    """Runs the recurring billing and trial jobs, on demand or on a fixed interval."""

    def __init__(
        self,
        settings: SettingsRepository,
        reconciler: BillingReconciler,
        trial_manager: TrialManager,
        subscription_service: SubscriptionService,
        *,
        interval_minutes: int = 1440,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings
        self._reconciler = reconciler
        self._trials = trial_manager
        self._subscriptions = subscription_service
        self._interval = max(1, interval_minutes) * 60
        self._clock = clock
        self._run_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        logger.info("Starting billing job scheduler (every %s minutes).", self._interval // 60)
        self._shutdown.clear()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="billing-job-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        logger.info("Stopping billing job scheduler.")
        self._shutdown.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduled billing run failed.")
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> Optional[Dict[str, Any]]:
        """Run every job once; returns ``None`` when a previous run is still in progress."""
        if self._run_lock.locked():
            logger.warning("Previous billing run still in progress; skipping this one.")
            return None
        async with self._run_lock:
            results = await self.run_job("all")
        self._settings.set_setting(
            SETTING_LAST_RUN,
            json.dumps({"finished_at": self._clock().isoformat(), "results": results}, default=str),
        )
        return results

    def last_run(self) -> Optional[Dict[str, Any]]:
        raw = self._settings.get_setting(SETTING_LAST_RUN)
        return json.loads(raw) if raw else None

    async def run_job(
        self,
        job_type: str,
        *,
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> Dict[str, Any]:
        if job_type not in JOB_TYPES:
            raise ValueError(f"Invalid job type {job_type!r}. Expected one of: {', '.join(JOB_TYPES)}")
        logger.info("Running billing job %s", job_type)

        if job_type == "failed-payments":
            return _as_dict(await self._reconciler.process_failed_payments())
        if job_type == "sync-records":
            return _as_dict(await self._reconciler.sync_billing_records())
        if job_type == "cleanup":
            return _as_dict(await self._reconciler.cleanup_old_billing_records())
        if job_type == "monthly-report":
            return await self._reconciler.generate_monthly_billing_report(year, month)
        if job_type == "trials":
            return await self._run_trial_sweeps()
        if job_type == "period-end":
            return await asyncio.to_thread(self._subscriptions.process_period_end_cancellations)

        names: List[str] = ["billing", "trials", "period_end_cancellations"]
        outcomes = await asyncio.gather(
            self._reconciler.run_all_jobs(),
            self._run_trial_sweeps(),
            asyncio.to_thread(self._subscriptions.process_period_end_cancellations),
            return_exceptions=True,
        )
        results: Dict[str, Any] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error("Job group %s failed: %s", name, outcome, exc_info=outcome)
                results[name] = {"error": str(outcome) or type(outcome).__name__}
            else:
                results[name] = outcome
        return results

    async def _run_trial_sweeps(self) -> Dict[str, Any]:
        expired = await asyncio.to_thread(self._trials.process_expired_trials)
        reminders = await asyncio.to_thread(self._trials.send_trial_reminders)
        return {"expired_trials": expired, "reminders": reminders}


def _as_dict(summary: Any) -> Dict[str, Any]:
    return asdict(summary) if is_dataclass(summary) else dict(summary)
