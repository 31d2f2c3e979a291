import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv


class Settings:
    """Centralised application configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/supportdesk.db")).resolve()
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.gateway_timeout_seconds = self._get_int("GATEWAY_TIMEOUT_SECONDS", default=15)
        self.payment_suspension_attempts = self._get_int("PAYMENT_SUSPENSION_ATTEMPTS", default=4)
        self.payment_warning_attempt = self._get_int("PAYMENT_WARNING_ATTEMPT", default=2)
        self.billing_sync_lookback_days = self._get_int("BILLING_SYNC_LOOKBACK_DAYS", default=30)
        self.billing_retention_years = self._get_int("BILLING_RETENTION_YEARS", default=2)
        self.trial_default_days = self._get_int("TRIAL_DEFAULT_DAYS", default=14)
        self.trial_reminder_days = self._get_int_list("TRIAL_REMINDER_DAYS", default=[7, 3, 1])
        self.usage_cache_ttl_seconds = self._get_int("USAGE_CACHE_TTL_SECONDS", default=30)
        self.usage_warning_threshold = self._get_int("USAGE_WARNING_THRESHOLD", default=75)
        self.billing_scheduler_enabled = self._get_bool("BILLING_SCHEDULER_ENABLED", default=False)
        self.billing_job_interval_minutes = self._get_int("BILLING_JOB_INTERVAL_MINUTES", default=1440)
        self.smtp_host = os.getenv("SMTP_HOST")
        self.smtp_port = self._get_int("SMTP_PORT", default=587)
        self.smtp_username = os.getenv("SMTP_USERNAME")
        self.smtp_password = os.getenv("SMTP_PASSWORD")
        self.smtp_from_email = os.getenv("SMTP_FROM_EMAIL")
        self.smtp_from_name = os.getenv("SMTP_FROM_NAME", "Support Desk Billing")
        self.admin_token_secret = os.getenv("ADMIN_TOKEN_SECRET", "change-me")
        self.admin_token_exp_minutes = self._get_int("ADMIN_TOKEN_EXP_MINUTES", default=60 * 24)
        self.admin_default_email = os.getenv("ADMIN_EMAIL")
        self.admin_default_password = os.getenv("ADMIN_PASSWORD")
        origins = os.getenv("CORS_ALLOW_ORIGINS")
        if origins:
            self.cors_allow_origins = [item.strip() for item in origins.split(",") if item.strip()]
        else:
            self.cors_allow_origins = ["*"]

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        value = os.getenv(key)
        if value is None:
            return default
        return value.strip().lower() in ("1", "true", "yes", "on")

    @staticmethod
    def _get_int_list(key: str, default: List[int]) -> List[int]:
        value = os.getenv(key)
        if not value:
            return list(default)
        try:
            return [int(item) for item in value.split(",") if item.strip()]
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be a comma separated list of integers") from exc
