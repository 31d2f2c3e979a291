"""Exception taxonomy for subscription and billing operations."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for failures raised while talking to billing collaborators."""


class RetryablePaymentError(BillingError):
    """Declined card, insufficient funds or a transient gateway fault."""


class PermanentBillingError(BillingError):
    """Data problem that retrying will not fix (unknown reference, bad payload)."""


class InvalidInvoicePayloadError(PermanentBillingError):
    pass


class GatewayUnavailableError(BillingError):
    """The payment gateway could not be reached or did not answer in time."""


class SubscriptionError(ValueError):
    """
    User-facing command failure.

    Attributes:
        message: Human readable explanation
        status_code: HTTP status the API layer should answer with
        details: Extra context for the response body
    """

    def __init__(
        self,
        message: str,
        status_code: int = HTTPStatus.BAD_REQUEST,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = int(status_code)
        self.details = details or {}


class SubscriptionNotFoundError(SubscriptionError):
    def __init__(self, subscription_id: Any) -> None:
        super().__init__(
            f"Subscription {subscription_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
            details={"subscription_id": subscription_id},
        )


class PlanNotFoundError(SubscriptionError):
    def __init__(self, plan: Any) -> None:
        super().__init__(
            f"Invalid or inactive subscription plan: {plan}",
            status_code=HTTPStatus.BAD_REQUEST,
            details={"plan": plan},
        )


class InvalidTransitionError(SubscriptionError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Invalid subscription transition {current} -> {target}",
            status_code=HTTPStatus.CONFLICT,
            details={"from": current, "to": target},
        )
