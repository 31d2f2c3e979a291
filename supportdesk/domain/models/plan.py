from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

UNLIMITED = -1


@dataclass(slots=True)
class PlanLimits:
    active_tickets: int
    completed_tickets: int
    total_tickets: int
    storage_quota_gb: int = UNLIMITED

    def is_unlimited(self) -> bool:
        return (
            self.active_tickets == UNLIMITED
            and self.completed_tickets == UNLIMITED
            and self.total_tickets == UNLIMITED
        )


@dataclass(slots=True)
class Plan:
    id: int
    slug: str
    name: str
    price: int
    currency: str
    billing_interval: str
    trial_days: int
    is_active: bool
    limits: PlanLimits
    sort_order: int = 0
    description: str = ""
    features: List[str] = field(default_factory=list)
