import json
import sqlite3
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from ...domain.errors import PermanentBillingError, SubscriptionNotFoundError
from ...domain.models import (
    BillingRecord,
    BillingRecordStatus,
    GatewayInvoice,
    LineItem,
    Plan,
    PlanLimits,
    Subscription,
    SubscriptionStatus,
    TicketAction,
    UsageEvent,
    UsageSnapshot,
    User,
)
from ...domain.ports.persistence import PersistenceGateway

DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "slug": "free-tier",
        "name": "Free Tier",
        "price": 0,
        "trial_days": 0,
        "limits": (10, 50, 60),
        "description": "Perfect for small teams getting started",
        "features": [
            "Up to 10 active tickets",
            "Basic ticket management",
            "Email notifications",
            "Community support",
        ],
    },
    {
        "slug": "starter",
        "name": "Starter",
        "price": 2900,
        "trial_days": 14,
        "limits": (50, 500, 550),
        "description": "Great for growing teams",
        "features": [
            "Up to 50 active tickets",
            "Advanced ticket management",
            "Custom fields",
            "Email integration",
            "Priority support",
        ],
    },
    {
        "slug": "professional",
        "name": "Professional",
        "price": 7900,
        "trial_days": 14,
        "limits": (200, 2000, 2200),
        "description": "Perfect for professional teams",
        "features": [
            "Up to 200 active tickets",
            "Advanced automation",
            "Team management",
            "Analytics & reporting",
            "API access",
        ],
    },
    {
        "slug": "business",
        "name": "Business",
        "price": 14900,
        "trial_days": 14,
        "limits": (500, 5000, 5500),
        "description": "Ideal for larger organizations",
        "features": [
            "Up to 500 active tickets",
            "Advanced integrations",
            "Multi-team support",
            "Custom branding",
            "SLA guarantees",
        ],
    },
    {
        "slug": "enterprise",
        "name": "Enterprise",
        "price": 29900,
        "trial_days": 30,
        "limits": (-1, -1, -1),
        "description": "Complete solution for enterprises",
        "features": [
            "Unlimited tickets",
            "Enterprise integrations",
            "Dedicated account manager",
            "24/7 phone support",
            "Custom SLA",
        ],
    },
]

_SUBSCRIPTION_COLUMNS = frozenset(
    {
        "plan_id",
        "status",
        "current_period_start",
        "current_period_end",
        "trial_start",
        "trial_end",
        "cancel_at_period_end",
        "cancelled_at",
        "external_customer_ref",
        "external_subscription_ref",
        "payment_method_ref",
        "metadata",
    }
)

_BILLING_RECORD_COLUMNS = frozenset(
    {
        "status",
        "amount_due",
        "amount_paid",
        "amount_remaining",
        "currency",
        "due_date",
        "paid_at",
        "voided_at",
        "attempt_count",
        "failure_reason",
        "invoice_number",
        "hosted_invoice_url",
        "line_items",
    }
)

_FAILED_PAYMENT_PREDICATE = (
    "(status = 'uncollectible' OR (status = 'open' AND attempt_count > 0))"
)


class SQLitePersistence(PersistenceGateway):
    """SQLite-backed implementation of the persistence gateway."""

    def __init__(
        self,
        path: Path,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        seed_plans: bool = True,
    ) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._initialize()
        if seed_plans:
            self._seed_plans()

    def _initialize(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS plans (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    slug TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    features TEXT NOT NULL DEFAULT '[]',
                    price INTEGER NOT NULL,
                    currency TEXT NOT NULL DEFAULT 'usd',
                    billing_interval TEXT NOT NULL DEFAULT 'month',
                    trial_days INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    active_tickets INTEGER NOT NULL,
                    completed_tickets INTEGER NOT NULL,
                    total_tickets INTEGER NOT NULL,
                    storage_quota_gb INTEGER NOT NULL DEFAULT -1
                );

                CREATE TABLE IF NOT EXISTS subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    plan_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    current_period_start TEXT NOT NULL,
                    current_period_end TEXT NOT NULL,
                    trial_start TEXT,
                    trial_end TEXT,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    cancelled_at TEXT,
                    external_customer_ref TEXT,
                    external_subscription_ref TEXT,
                    payment_method_ref TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(plan_id) REFERENCES plans(id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_open_tenant
                    ON subscriptions(tenant_id) WHERE status != 'cancelled';

                CREATE INDEX IF NOT EXISTS idx_subscriptions_status
                    ON subscriptions(status);

                CREATE TABLE IF NOT EXISTS billing_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscription_id INTEGER NOT NULL,
                    external_invoice_ref TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    amount_due INTEGER NOT NULL DEFAULT 0,
                    amount_paid INTEGER NOT NULL DEFAULT 0,
                    amount_remaining INTEGER NOT NULL DEFAULT 0,
                    currency TEXT NOT NULL DEFAULT 'usd',
                    billing_date TEXT NOT NULL,
                    due_date TEXT,
                    paid_at TEXT,
                    voided_at TEXT,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    failure_reason TEXT,
                    invoice_number TEXT,
                    hosted_invoice_url TEXT,
                    line_items TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(subscription_id) REFERENCES subscriptions(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_billing_records_subscription
                    ON billing_records(subscription_id, billing_date DESC);

                CREATE INDEX IF NOT EXISTS idx_billing_records_status
                    ON billing_records(status, billing_date);

                CREATE TABLE IF NOT EXISTS usage_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    ticket_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    previous_status TEXT,
                    new_status TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    occurred_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_usage_events_tenant_ticket
                    ON usage_events(tenant_id, ticket_id, id);

                CREATE TABLE IF NOT EXISTS notification_ledger (
                    dedupe_key TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    notification_type TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tenant_contacts (
                    tenant_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def _seed_plans(self) -> None:
        with self._lock:
            cur = self._conn.execute("SELECT COUNT(*) FROM plans")
            existing = cur.fetchone()[0]
        if existing:
            return
        with self._lock, self._conn:
            for order, plan in enumerate(DEFAULT_PLANS, start=1):
                active, completed, total = plan["limits"]
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO plans (
                        slug, name, description, features, price, trial_days,
                        sort_order, active_tickets, completed_tickets, total_tickets
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        plan["slug"],
                        plan["name"],
                        plan["description"],
                        json.dumps(plan["features"]),
                        plan["price"],
                        plan["trial_days"],
                        order,
                        active,
                        completed,
                        total,
                    ),
                )

    def close(self) -> None:
        self._conn.close()

    # SettingsRepository API -------------------------------------------------
    def get_setting(self, key: str) -> Optional[str]:
        with self._lock:
            cur = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
            row = cur.fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    # PlanCatalog API --------------------------------------------------------
    def create_plan(
        self,
        slug: str,
        name: str,
        price: int,
        limits: PlanLimits,
        *,
        trial_days: int = 0,
        currency: str = "usd",
        billing_interval: str = "month",
        is_active: bool = True,
        sort_order: int = 0,
        description: str = "",
        features: Optional[List[str]] = None,
    ) -> Plan:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO plans (
                    slug, name, description, features, price, currency, billing_interval,
                    trial_days, is_active, sort_order, active_tickets, completed_tickets,
                    total_tickets, storage_quota_gb
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    slug,
                    name,
                    description,
                    json.dumps(features or []),
                    price,
                    currency,
                    billing_interval,
                    trial_days,
                    int(is_active),
                    sort_order,
                    limits.active_tickets,
                    limits.completed_tickets,
                    limits.total_tickets,
                    limits.storage_quota_gb,
                ),
            )
            cur = self._conn.execute("SELECT * FROM plans WHERE id = ?", (cur.lastrowid,))
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist plan.")
        return self._row_to_plan(row)

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM plans WHERE id = ?", (plan_id,))
            row = cur.fetchone()
        return self._row_to_plan(row) if row else None

    def get_plan_by_slug(self, slug: str) -> Optional[Plan]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM plans WHERE slug = ?", (slug,))
            row = cur.fetchone()
        return self._row_to_plan(row) if row else None

    def list_active_plans(self) -> List[Plan]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM plans WHERE is_active = 1 ORDER BY sort_order ASC, id ASC"
            )
            rows = cur.fetchall()
        return [self._row_to_plan(row) for row in rows]

    # SubscriptionRepository API --------------------------------------------
    def create_subscription(
        self,
        tenant_id: str,
        plan_id: int,
        status: SubscriptionStatus,
        current_period_start: datetime,
        current_period_end: datetime,
        *,
        trial_start: Optional[datetime] = None,
        trial_end: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        now = self._now()
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO subscriptions (
                    tenant_id, plan_id, status, current_period_start, current_period_end,
                    trial_start, trial_end, metadata, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    plan_id,
                    SubscriptionStatus(status).value,
                    self._iso(current_period_start),
                    self._iso(current_period_end),
                    self._iso(trial_start),
                    self._iso(trial_end),
                    json.dumps(metadata or {}, default=str),
                    now,
                    now,
                ),
            )
            cur = self._conn.execute("SELECT * FROM subscriptions WHERE id = ?", (cur.lastrowid,))
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist subscription.")
        return self._row_to_subscription(row)

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
            )
            row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def get_subscription_for_tenant(self, tenant_id: str) -> Optional[Subscription]:
        """Return the tenant's open subscription, falling back to the latest cancelled one."""
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE tenant_id = ?
                ORDER BY CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END, id DESC
                LIMIT 1
                """,
                (tenant_id,),
            )
            row = cur.fetchone()
        return self._row_to_subscription(row) if row else None

    def list_subscriptions(
        self,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
        *,
        with_external_ref: bool = False,
    ) -> List[Subscription]:
        clauses: List[str] = []
        params: List[Any] = []
        if statuses is not None:
            values = [SubscriptionStatus(status).value for status in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if with_external_ref:
            clauses.append(
                "external_subscription_ref IS NOT NULL AND external_subscription_ref != ''"
            )
        query = "SELECT * FROM subscriptions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id ASC"
        with self._lock:
            cur = self._conn.execute(query, params)
            rows = cur.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def update_subscription(self, subscription_id: int, **fields: Any) -> Subscription:
        updates, params = self._build_updates(fields, _SUBSCRIPTION_COLUMNS)
        if updates:
            updates.append("updated_at = ?")
            params.append(self._now())
            params.append(subscription_id)
            statement = f"UPDATE subscriptions SET {', '.join(updates)} WHERE id = ?"
            with self._lock, self._conn:
                self._conn.execute(statement, params)
        subscription = self.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    def update_status_if(
        self,
        subscription_id: int,
        expected: SubscriptionStatus,
        target: SubscriptionStatus,
        **fields: Any,
    ) -> bool:
        """Move to ``target`` only while the stored status is still ``expected``."""
        fields.pop("status", None)
        updates, params = self._build_updates(fields, _SUBSCRIPTION_COLUMNS)
        updates = ["status = ?", *updates, "updated_at = ?"]
        params = [SubscriptionStatus(target).value, *params, self._now()]
        params.extend([subscription_id, SubscriptionStatus(expected).value])
        statement = f"UPDATE subscriptions SET {', '.join(updates)} WHERE id = ? AND status = ?"
        with self._lock, self._conn:
            cur = self._conn.execute(statement, params)
            return cur.rowcount == 1

    def find_expired_trials(self, now: datetime) -> List[Subscription]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE status = 'trial' AND trial_end IS NOT NULL AND trial_end < ?
                ORDER BY trial_end ASC
                """,
                (self._iso(now),),
            )
            rows = cur.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def find_trials_ending_between(self, start: datetime, end: datetime) -> List[Subscription]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE status = 'trial' AND trial_end > ? AND trial_end <= ?
                ORDER BY trial_end ASC
                """,
                (self._iso(start), self._iso(end)),
            )
            rows = cur.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def find_period_end_cancellations(self, now: datetime) -> List[Subscription]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE cancel_at_period_end = 1
                  AND status != 'cancelled'
                  AND current_period_end <= ?
                ORDER BY current_period_end ASC
                """,
                (self._iso(now),),
            )
            rows = cur.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def find_subscriptions_expiring_between(self, start: datetime, end: datetime) -> List[Subscription]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE status IN ('active', 'trial')
                  AND current_period_end > ? AND current_period_end <= ?
                ORDER BY current_period_end ASC
                """,
                (self._iso(start), self._iso(end)),
            )
            rows = cur.fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def count_subscriptions_created_between(
        self, start: datetime, end: datetime
    ) -> Dict[str, int]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT status, COUNT(*) AS total FROM subscriptions
                WHERE created_at >= ? AND created_at < ?
                GROUP BY status
                """,
                (self._iso(start), self._iso(end)),
            )
            rows = cur.fetchall()
        return {row["status"]: row["total"] for row in rows}

    # BillingRecordRepository API -------------------------------------------
    def get_billing_record(self, record_id: int) -> Optional[BillingRecord]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM billing_records WHERE id = ?", (record_id,))
            row = cur.fetchone()
        return self._row_to_billing_record(row) if row else None

    def get_billing_record_by_external_ref(
        self, external_invoice_ref: str
    ) -> Optional[BillingRecord]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM billing_records WHERE external_invoice_ref = ?",
                (external_invoice_ref,),
            )
            row = cur.fetchone()
        return self._row_to_billing_record(row) if row else None

    def create_billing_record(self, subscription_id: int, invoice: GatewayInvoice) -> BillingRecord:
        now = self._now()
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO billing_records (
                    subscription_id, external_invoice_ref, status, amount_due, amount_paid,
                    amount_remaining, currency, billing_date, due_date, paid_at, voided_at,
                    attempt_count, invoice_number, hosted_invoice_url, line_items,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription_id,
                    invoice.external_invoice_ref,
                    BillingRecordStatus(invoice.status).value,
                    invoice.amount_due,
                    invoice.amount_paid,
                    invoice.amount_remaining,
                    invoice.currency,
                    self._iso(invoice.created),
                    self._iso(invoice.due_date),
                    self._iso(invoice.paid_at),
                    self._iso(invoice.voided_at),
                    invoice.attempt_count,
                    invoice.invoice_number,
                    invoice.hosted_invoice_url,
                    self._dump_line_items(invoice.line_items),
                    now,
                    now,
                ),
            )
            cur = self._conn.execute(
                "SELECT * FROM billing_records WHERE id = ?", (cur.lastrowid,)
            )
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist billing record.")
        return self._row_to_billing_record(row)

    def update_billing_record(self, record_id: int, **fields: Any) -> BillingRecord:
        updates, params = self._build_updates(fields, _BILLING_RECORD_COLUMNS)
        if updates:
            updates.append("updated_at = ?")
            params.append(self._now())
            params.append(record_id)
            statement = (
                f"UPDATE billing_records SET {', '.join(updates)} "
                "WHERE id = ? AND status NOT IN ('paid', 'void')"
            )
            with self._lock, self._conn:
                cur = self._conn.execute(statement, params)
                changed = cur.rowcount
        else:
            changed = 1
        record = self.get_billing_record(record_id)
        if record is None:
            raise PermanentBillingError(f"Billing record {record_id} not found")
        if not changed:
            raise PermanentBillingError(
                f"Billing record {record_id} is {record.status.value} and can no longer change"
            )
        return record

    def list_billing_records(self, subscription_id: int) -> List[BillingRecord]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM billing_records
                WHERE subscription_id = ?
                ORDER BY billing_date DESC, id DESC
                """,
                (subscription_id,),
            )
            rows = cur.fetchall()
        return [self._row_to_billing_record(row) for row in rows]

    def list_outstanding_billing_records(self) -> List[BillingRecord]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM billing_records WHERE status IN ('open', 'uncollectible') ORDER BY id ASC"
            )
            rows = cur.fetchall()
        return [self._row_to_billing_record(row) for row in rows]

    def record_payment_attempt(
        self,
        record_id: int,
        expected_attempt_count: int,
        failure_reason: Optional[str],
    ) -> Optional[BillingRecord]:
        """Count one failed collection attempt; ``None`` when another writer got there first."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                UPDATE billing_records
                SET attempt_count = attempt_count + 1, failure_reason = ?, updated_at = ?
                WHERE id = ? AND attempt_count = ? AND status NOT IN ('paid', 'void')
                """,
                (failure_reason, self._now(), record_id, expected_attempt_count),
            )
            if cur.rowcount != 1:
                return None
            cur = self._conn.execute("SELECT * FROM billing_records WHERE id = ?", (record_id,))
            row = cur.fetchone()
        return self._row_to_billing_record(row) if row else None

    def get_revenue_stats(self, start: datetime, end: datetime) -> Dict[str, Any]:
        params = (self._iso(start), self._iso(end))
        with self._lock:
            cur = self._conn.execute(
                f"""
                SELECT
                    COALESCE(SUM(CASE WHEN status = 'paid' THEN amount_paid ELSE 0 END), 0)
                        AS total_revenue,
                    COALESCE(SUM(CASE WHEN status = 'paid' THEN 1 ELSE 0 END), 0)
                        AS paid_invoices,
                    COALESCE(SUM(CASE WHEN status = 'open' THEN amount_remaining ELSE 0 END), 0)
                        AS pending_revenue,
                    COALESCE(SUM(CASE WHEN {_FAILED_PAYMENT_PREDICATE} THEN 1 ELSE 0 END), 0)
                        AS failed_payments
                FROM billing_records
                WHERE billing_date >= ? AND billing_date < ?
                """,
                params,
            )
            totals = cur.fetchone()
            cur = self._conn.execute(
                """
                SELECT currency FROM billing_records
                WHERE billing_date >= ? AND billing_date < ?
                GROUP BY currency ORDER BY COUNT(*) DESC LIMIT 1
                """,
                params,
            )
            currency_row = cur.fetchone()
        return {
            "total_revenue": totals["total_revenue"],
            "paid_invoices": totals["paid_invoices"],
            "pending_revenue": totals["pending_revenue"],
            "failed_payments": totals["failed_payments"],
            "currency": currency_row["currency"] if currency_row else "usd",
        }

    def list_failed_payments_between(self, start: datetime, end: datetime) -> List[BillingRecord]:
        with self._lock:
            cur = self._conn.execute(
                f"""
                SELECT * FROM billing_records
                WHERE billing_date >= ? AND billing_date < ? AND {_FAILED_PAYMENT_PREDICATE}
                ORDER BY billing_date ASC
                """,
                (self._iso(start), self._iso(end)),
            )
            rows = cur.fetchall()
        return [self._row_to_billing_record(row) for row in rows]

    def delete_settled_billing_records_before(self, cutoff: datetime) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                DELETE FROM billing_records
                WHERE status IN ('paid', 'void') AND billing_date < ?
                """,
                (self._iso(cutoff),),
            )
            return cur.rowcount

    # TicketCounter API ------------------------------------------------------
    def record_usage_event(
        self,
        tenant_id: str,
        ticket_id: str,
        action: TicketAction,
        *,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageEvent:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO usage_events (
                    tenant_id, ticket_id, action, previous_status, new_status,
                    metadata, occurred_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    ticket_id,
                    TicketAction(action).value,
                    previous_status,
                    new_status,
                    json.dumps(metadata or {}, default=str),
                    self._now(),
                ),
            )
            cur = self._conn.execute("SELECT * FROM usage_events WHERE id = ?", (cur.lastrowid,))
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist usage event.")
        return self._row_to_usage_event(row)

    def get_usage(self, tenant_id: str) -> UsageSnapshot:
        return self._fold_usage(tenant_id, None, None)

    def get_usage_for_period(self, tenant_id: str, start: datetime, end: datetime) -> UsageSnapshot:
        return self._fold_usage(tenant_id, start, end)

    def get_recent_activity(self, tenant_id: str, limit: int) -> List[UsageEvent]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM usage_events
                WHERE tenant_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (tenant_id, limit),
            )
            rows = cur.fetchall()
        return [self._row_to_usage_event(row) for row in rows]

    def _fold_usage(
        self, tenant_id: str, start: Optional[datetime], end: Optional[datetime]
    ) -> UsageSnapshot:
        # A ticket counts under the action of its most recent event.
        window = ""
        params: List[Any] = [tenant_id]
        if start is not None and end is not None:
            window = " AND occurred_at >= ? AND occurred_at < ?"
            params.extend([self._iso(start), self._iso(end)])
        with self._lock:
            cur = self._conn.execute(
                f"""
                SELECT e.action AS action, COUNT(*) AS total
                FROM usage_events e
                JOIN (
                    SELECT MAX(id) AS last_id FROM usage_events
                    WHERE tenant_id = ?{window}
                    GROUP BY ticket_id
                ) latest ON latest.last_id = e.id
                GROUP BY e.action
                """,
                params,
            )
            rows = cur.fetchall()
        counts = {row["action"]: row["total"] for row in rows}
        active = counts.get(TicketAction.CREATED.value, 0)
        completed = counts.get(TicketAction.COMPLETED.value, 0)
        return UsageSnapshot(
            active_tickets=active,
            completed_tickets=completed,
            total_tickets=active + completed,
            archived_tickets=counts.get(TicketAction.ARCHIVED.value, 0),
        )

    # NotificationLedger API -------------------------------------------------
    def claim_notification(self, dedupe_key: str, tenant_id: str, notification_type: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT OR IGNORE INTO notification_ledger (
                    dedupe_key, tenant_id, notification_type, created_at
                )
                VALUES (?, ?, ?, ?)
                """,
                (dedupe_key, tenant_id, notification_type, self._now()),
            )
            return cur.rowcount == 1

    def release_notification(self, dedupe_key: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM notification_ledger WHERE dedupe_key = ?", (dedupe_key,)
            )

    # TenantDirectory API ----------------------------------------------------
    def get_tenant_contact(self, tenant_id: str) -> Optional[str]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT email FROM tenant_contacts WHERE tenant_id = ?", (tenant_id,)
            )
            row = cur.fetchone()
        return row["email"] if row else None

    def set_tenant_contact(self, tenant_id: str, email: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO tenant_contacts (tenant_id, email, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(tenant_id) DO UPDATE SET "
                "email = excluded.email, updated_at = excluded.updated_at",
                (tenant_id, email.lower(), self._now()),
            )

    # UserRepository API ----------------------------------------------------
    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM users WHERE email = ?", (email.lower(),))
            row = cur.fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cur.fetchone()
        return self._row_to_user(row) if row else None

    def create_user(self, email: str, password_hash: str, is_active: bool = True) -> User:
        normalized = email.lower()
        now = self._now()
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO users (email, password_hash, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (normalized, password_hash, int(is_active), now, now),
            )
            cur = self._conn.execute("SELECT * FROM users WHERE id = ?", (cur.lastrowid,))
            row = cur.fetchone()
        if not row:
            raise RuntimeError("Failed to persist user.")
        return self._row_to_user(row)

    # Helpers ----------------------------------------------------------------
    def _now(self) -> str:
        return self._iso(self._clock())

    @staticmethod
    def _iso(value: Optional[datetime]) -> Optional[str]:
        # Fixed-width UTC text keeps lexical and chronological order aligned.
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

    @staticmethod
    def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            result = datetime.fromisoformat(value)
        except ValueError:
            result = datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
        if result.tzinfo is None:
            return result.replace(tzinfo=timezone.utc)
        return result.astimezone(timezone.utc)

    def _build_updates(self, fields: Dict[str, Any], allowed: frozenset) -> tuple:
        updates: List[str] = []
        params: List[Any] = []
        for column, value in fields.items():
            if column not in allowed:
                raise ValueError(f"Unknown column: {column}")
            updates.append(f"{column} = ?")
            params.append(self._to_column(column, value))
        return updates, params

    def _to_column(self, column: str, value: Any) -> Any:
        if isinstance(value, datetime):
            return self._iso(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, bool):
            return int(value)
        if column == "metadata":
            return json.dumps(value or {}, default=str)
        if column == "line_items":
            return self._dump_line_items(value or [])
        return value

    @staticmethod
    def _dump_line_items(items: Iterable[LineItem]) -> str:
        return json.dumps(
            [
                {"description": item.description, "amount": item.amount, "quantity": item.quantity}
                for item in items
            ]
        )

    def _row_to_plan(self, row: sqlite3.Row) -> Plan:
        return Plan(
            id=row["id"],
            slug=row["slug"],
            name=row["name"],
            price=row["price"],
            currency=row["currency"],
            billing_interval=row["billing_interval"],
            trial_days=row["trial_days"],
            is_active=bool(row["is_active"]),
            limits=PlanLimits(
                active_tickets=row["active_tickets"],
                completed_tickets=row["completed_tickets"],
                total_tickets=row["total_tickets"],
                storage_quota_gb=row["storage_quota_gb"],
            ),
            sort_order=row["sort_order"],
            description=row["description"],
            features=json.loads(row["features"]),
        )

    def _row_to_subscription(self, row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            tenant_id=row["tenant_id"],
            plan_id=row["plan_id"],
            status=SubscriptionStatus(row["status"]),
            current_period_start=self._parse_datetime(row["current_period_start"]),
            current_period_end=self._parse_datetime(row["current_period_end"]),
            trial_start=self._parse_datetime(row["trial_start"]),
            trial_end=self._parse_datetime(row["trial_end"]),
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            cancelled_at=self._parse_datetime(row["cancelled_at"]),
            external_customer_ref=row["external_customer_ref"],
            external_subscription_ref=row["external_subscription_ref"],
            payment_method_ref=row["payment_method_ref"],
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )

    def _row_to_billing_record(self, row: sqlite3.Row) -> BillingRecord:
        return BillingRecord(
            id=row["id"],
            subscription_id=row["subscription_id"],
            external_invoice_ref=row["external_invoice_ref"],
            status=BillingRecordStatus(row["status"]),
            amount_due=row["amount_due"],
            amount_paid=row["amount_paid"],
            amount_remaining=row["amount_remaining"],
            currency=row["currency"],
            billing_date=self._parse_datetime(row["billing_date"]),
            due_date=self._parse_datetime(row["due_date"]),
            paid_at=self._parse_datetime(row["paid_at"]),
            voided_at=self._parse_datetime(row["voided_at"]),
            attempt_count=row["attempt_count"],
            failure_reason=row["failure_reason"],
            invoice_number=row["invoice_number"],
            hosted_invoice_url=row["hosted_invoice_url"],
            line_items=[LineItem(**item) for item in json.loads(row["line_items"] or "[]")],
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )

    def _row_to_usage_event(self, row: sqlite3.Row) -> UsageEvent:
        return UsageEvent(
            id=row["id"],
            tenant_id=row["tenant_id"],
            ticket_id=row["ticket_id"],
            action=TicketAction(row["action"]),
            occurred_at=self._parse_datetime(row["occurred_at"]),
            previous_status=row["previous_status"],
            new_status=row["new_status"],
            metadata=json.loads(row["metadata"] or "{}"),
        )

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            is_active=bool(row["is_active"]),
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )
