from __future__ import annotations

from enum import Enum


class NotificationType(str, Enum):
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    PAYMENT_FAILED_WARNING = "payment_failed_warning"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    TRIAL_WELCOME = "trial_welcome"
    TRIAL_REMINDER = "trial_reminder"
    TRIAL_CONVERTED = "trial_converted"
    TRIAL_CANCELLED = "trial_cancelled"
    TRIAL_EXTENDED = "trial_extended"
    TRIAL_EXPIRED = "trial_expired"
