"""Usage snapshots and gating results derived from ticket activity."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .plan import PlanLimits


class TicketAction(str, Enum):
    CREATED = "created"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    DELETED = "deleted"


@dataclass(slots=True)
class UsageSnapshot:
    active_tickets: int = 0
    completed_tickets: int = 0
    total_tickets: int = 0
    archived_tickets: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class PercentageUsed:
    active: float = 0.0
    completed: float = 0.0
    total: float = 0.0

    def highest(self) -> float:
        return max(self.active, self.completed, self.total)


@dataclass(slots=True)
class LimitStatus:
    is_at_limit: bool
    is_near_limit: bool
    percentage_used: PercentageUsed
    limits: PlanLimits
    current: UsageSnapshot

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    limit_type: Optional[str] = None
    usage: Optional[UsageSnapshot] = None
    limit_status: Optional[LimitStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class UsageEvent:
    id: int
    tenant_id: str
    ticket_id: str
    action: TicketAction
    occurred_at: datetime
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
