from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..application.services.admin_auth_service import AdminAuthService
from ..domain.ports.billing import Notifier, PaymentGateway
from ..domain.ports.persistence import PersistenceGateway
from ..infrastructure.gateways.stripe_gateway import StripePaymentGateway
from ..infrastructure.notifications.email_notifier import EmailNotifier
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..services.billing_reconciler import BillingReconciler
from ..services.job_scheduler import BillingJobScheduler
from ..services.subscription_service import SubscriptionService
from ..services.trial_manager import TrialManager
from ..services.usage_tracker import UsageTracker
from .clock import Clock, utcnow
from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    persistence: PersistenceGateway
    gateway: Optional[PaymentGateway]
    notifier: Notifier
    usage_tracker: UsageTracker
    subscription_service: SubscriptionService
    billing_reconciler: BillingReconciler
    trial_manager: TrialManager
    job_scheduler: BillingJobScheduler
    admin_auth_service: AdminAuthService


def build_container(
    settings: Settings,
    *,
    persistence: Optional[PersistenceGateway] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[Notifier] = None,
    clock: Clock = utcnow,
) -> ApplicationContainer:
    """Wire every service from ``settings``; explicit collaborators override the defaults."""
    if persistence is None:
        persistence = SQLitePersistence(settings.database_path)
    if gateway is None and settings.stripe_secret_key:
        gateway = StripePaymentGateway(settings.stripe_secret_key)
    if gateway is None:
        logger.warning("STRIPE_SECRET_KEY not set; gateway retries and sync are disabled.")
    if notifier is None:
        notifier = EmailNotifier(
            persistence,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_username=settings.smtp_username,
            smtp_password=settings.smtp_password,
            from_email=settings.smtp_from_email,
            from_name=settings.smtp_from_name,
        )

    usage_tracker = UsageTracker(
        persistence,
        cache_ttl_seconds=settings.usage_cache_ttl_seconds,
        warning_threshold=settings.usage_warning_threshold,
    )
    subscription_service = SubscriptionService(
        persistence, notifier, usage_tracker=usage_tracker, clock=clock
    )
    billing_reconciler = BillingReconciler(
        persistence,
        gateway,
        subscription_service,
        notifier,
        suspension_attempts=settings.payment_suspension_attempts,
        warning_attempt=settings.payment_warning_attempt,
        sync_lookback_days=settings.billing_sync_lookback_days,
        retention_years=settings.billing_retention_years,
        gateway_timeout=settings.gateway_timeout_seconds,
        clock=clock,
    )
    trial_manager = TrialManager(
        persistence,
        subscription_service,
        notifier,
        default_trial_days=settings.trial_default_days,
        reminder_days=settings.trial_reminder_days,
        clock=clock,
    )
    job_scheduler = BillingJobScheduler(
        persistence,
        billing_reconciler,
        trial_manager,
        subscription_service,
        interval_minutes=settings.billing_job_interval_minutes,
        clock=clock,
    )
    admin_auth_service = AdminAuthService(
        persistence,
        secret_key=settings.admin_token_secret,
        token_exp_minutes=settings.admin_token_exp_minutes,
    )
    return ApplicationContainer(
        settings=settings,
        persistence=persistence,
        gateway=gateway,
        notifier=notifier,
        usage_tracker=usage_tracker,
        subscription_service=subscription_service,
        billing_reconciler=billing_reconciler,
        trial_manager=trial_manager,
        job_scheduler=job_scheduler,
        admin_auth_service=admin_auth_service,
    )
