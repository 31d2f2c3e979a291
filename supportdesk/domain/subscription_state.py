"""Subscription status state machine.

Transitions::

    trial     -> active      trial converted with a payment method
    trial     -> cancelled   trial cancelled or expired unconverted
    active    -> past_due    payment failure observed on an unpaid invoice
    past_due  -> active      failed invoices paid or voided
    past_due  -> suspended   escalation after repeated failures
    *         -> cancelled   explicit cancellation (any non-terminal state)

``cancelled`` is terminal.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable

from .errors import InvalidTransitionError
from .models import BillingRecord, SubscriptionStatus

_S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    _S.TRIAL: frozenset({_S.ACTIVE, _S.CANCELLED}),
    _S.ACTIVE: frozenset({_S.PAST_DUE, _S.CANCELLED}),
    _S.PAST_DUE: frozenset({_S.ACTIVE, _S.SUSPENDED, _S.CANCELLED}),
    _S.SUSPENDED: frozenset({_S.CANCELLED}),
    _S.CANCELLED: frozenset(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(SubscriptionStatus(current), frozenset())


def assert_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(SubscriptionStatus(current).value, SubscriptionStatus(target).value)


def derive_status(
    current: SubscriptionStatus,
    records: Iterable[BillingRecord],
) -> SubscriptionStatus:
    """
    Compute the status implied by the subscription's billing records.

    Both the failed-payment job and the gateway sync consult this function, so
    the past_due/active flip is decided in one place. Escalation to suspended
    is never derived here; it is an explicit action of the failed-payment job.

    Args:
        current: Status currently stored for the subscription
        records: The subscription's billing records

    Returns:
        The status the subscription should be in (may equal ``current``)
    """
    current = SubscriptionStatus(current)
    has_failure = any(record.has_failed_attempt() for record in records)
    if current is _S.ACTIVE and has_failure:
        return _S.PAST_DUE
    if current is _S.PAST_DUE and not has_failure:
        return _S.ACTIVE
    return current
