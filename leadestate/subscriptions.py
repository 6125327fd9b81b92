"""
leadestate/subscriptions.py

Tenant subscription records.

This module owns every read and write of the subscriptions table:
- Looking up a tenant's current (trial/active) or most recent subscription
- Creating the signup trial (one current subscription per tenant)
- The idempotent trial -> expired transition used by lazy evaluation and the sweep
- Upgrade / cancellation bookkeeping (payment itself is handled elsewhere)

Key principles:
- Rows are never deleted; history is kept for audit and billing
- Status writes that can race are conditional ("... WHERE status = 'trial'")
- Driver errors surface as SubscriptionStoreError so callers can fail closed
"""

from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from leadestate.config import Settings
from leadestate.db import (
    DBConnection,
    Database,
    INTEGRITY_ERRORS,
    STORE_ERRORS,
    commit,
    execute_query,
    fetch_all,
    fetch_count,
    fetch_one,
    from_db_timestamp,
    insert_returning_id,
    to_db_timestamp,
    utc_now,
)
from leadestate.plans import CYCLE_MONTHS, BillingCycle, PlanCatalog

SECONDS_PER_DAY = 24 * 60 * 60


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    PAST_DUE = "past_due"


CURRENT_STATUSES = (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE)


class SubscriptionStoreError(RuntimeError):
    """The subscription state could not be read or written."""


class DuplicateSubscription(RuntimeError):
    """The tenant already has a trial or active subscription."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} already has a current subscription")
        self.tenant_id = tenant_id


class NoActiveSubscription(LookupError):
    """There is no subscription in the state the operation requires."""


# ============================================================================
# Subscription Data Model
# ============================================================================

@dataclass
class Subscription:
    """
    One tenant's relationship to a plan over a period of time.

    status == trial holds exactly when is_trial is set and trial_end_date is present.
    """
    id: int
    tenant_id: str
    plan_name: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_start: datetime
    current_period_end: datetime
    is_trial: bool = False
    trial_start_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    trial_converted: bool = False
    next_billing_date: Optional[datetime] = None
    amount: float = 0.0
    currency: str = "USD"
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_current(self) -> bool:
        """Trial and active subscriptions grant access."""
        return self.status in CURRENT_STATUSES

    def is_trial_expired(self, now: datetime) -> bool:
        if self.status != SubscriptionStatus.TRIAL or self.trial_end_date is None:
            return False
        return now > self.trial_end_date

    def trial_days_remaining(self, now: datetime) -> int:
        if not self.is_trial or self.trial_end_date is None:
            return 0
        return max(0, days_until(self.trial_end_date, now))


def days_until(end: datetime, now: datetime) -> int:
    """Whole days from now until end, rounded up (a partial day counts as one)."""
    return math.ceil((end - now).total_seconds() / SECONDS_PER_DAY)


def add_months(value: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the end of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


_SUBSCRIPTION_COLUMNS = """
    id, tenant_id, plan_name, status, billing_cycle,
    is_trial, trial_start_date, trial_end_date, trial_converted,
    current_period_start, current_period_end, next_billing_date,
    amount, currency, cancelled_at, cancelled_reason,
    created_at, updated_at
"""


def subscription_from_row(row: Mapping[str, Any]) -> Subscription:
    return Subscription(
        id=int(row["id"]),
        tenant_id=str(row["tenant_id"]),
        plan_name=row["plan_name"],
        status=SubscriptionStatus(row["status"]),
        billing_cycle=BillingCycle(row["billing_cycle"] or BillingCycle.MONTHLY.value),
        is_trial=bool(row["is_trial"]),
        trial_start_date=from_db_timestamp(row["trial_start_date"]),
        trial_end_date=from_db_timestamp(row["trial_end_date"]),
        trial_converted=bool(row["trial_converted"]),
        current_period_start=from_db_timestamp(row["current_period_start"]),
        current_period_end=from_db_timestamp(row["current_period_end"]),
        next_billing_date=from_db_timestamp(row["next_billing_date"]),
        amount=float(row["amount"] or 0),
        currency=row["currency"] or "USD",
        cancelled_at=from_db_timestamp(row["cancelled_at"]),
        cancelled_reason=row["cancelled_reason"],
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


def subscription_to_dict(subscription: Subscription) -> Dict[str, Any]:
    """API representation of a subscription."""
    def iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "id": subscription.id,
        "status": subscription.status.value,
        "planName": subscription.plan_name,
        "billingCycle": subscription.billing_cycle.value,
        "isTrial": subscription.is_trial,
        "trialStartDate": iso(subscription.trial_start_date),
        "trialEndDate": iso(subscription.trial_end_date),
        "currentPeriodStart": iso(subscription.current_period_start),
        "currentPeriodEnd": iso(subscription.current_period_end),
        "nextBillingDate": iso(subscription.next_billing_date),
        "amount": subscription.amount,
        "currency": subscription.currency,
        "cancelledAt": iso(subscription.cancelled_at),
        "cancelledReason": subscription.cancelled_reason,
    }


# ============================================================================
# Subscription Repository
# ============================================================================

class SubscriptionRepository:
    """
    Data access for the subscriptions table.

    This is the "load subscription for tenant" strategy used by the access
    evaluator; any object with find_active_subscription / find_latest_subscription /
    transition_to_expired can stand in for it.
    """

    def __init__(self, database: Database, catalog: PlanCatalog, settings: Settings):
        self.database = database
        self.catalog = catalog
        self.settings = settings

    # ---- Reads -------------------------------------------------------------

    def _select_one(self, where: str, params: Tuple[Any, ...]) -> Optional[Subscription]:
        try:
            with self.database.connect() as conn:
                row = fetch_one(
                    conn,
                    f"""
                    SELECT {_SUBSCRIPTION_COLUMNS}
                    FROM subscriptions
                    WHERE {where}
                    ORDER BY created_at DESC, id DESC
                    LIMIT 1
                    """,
                    params,
                )
        except STORE_ERRORS as e:
            print(f"[SUBSCRIPTION] Store read failed: {e}")
            raise SubscriptionStoreError("Failed to load subscription") from e
        return subscription_from_row(row) if row else None

    def find_active_subscription(self, tenant_id: str) -> Optional[Subscription]:
        """Most recent trial or active subscription for the tenant, if any."""
        return self._select_one(
            "tenant_id = ? AND status IN (?, ?)",
            (tenant_id, SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value),
        )

    def find_latest_subscription(self, tenant_id: str) -> Optional[Subscription]:
        """Most recent subscription for the tenant regardless of status."""
        return self._select_one("tenant_id = ?", (tenant_id,))

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        return self._select_one("id = ?", (subscription_id,))

    def list_subscriptions(self, tenant_id: str) -> List[Subscription]:
        """Full subscription history for a tenant, newest first."""
        try:
            with self.database.connect() as conn:
                rows = fetch_all(
                    conn,
                    f"""
                    SELECT {_SUBSCRIPTION_COLUMNS}
                    FROM subscriptions
                    WHERE tenant_id = ?
                    ORDER BY created_at DESC, id DESC
                    """,
                    (tenant_id,),
                )
        except STORE_ERRORS as e:
            raise SubscriptionStoreError("Failed to load subscription history") from e
        return [subscription_from_row(row) for row in rows]

    def find_expiring_trials(self, within_days: int = 3, now: Optional[datetime] = None) -> List[Subscription]:
        """Trials that are still running but end within the next `within_days` days."""
        now = now or utc_now()
        horizon = now + timedelta(days=within_days)
        try:
            with self.database.connect() as conn:
                rows = fetch_all(
                    conn,
                    f"""
                    SELECT {_SUBSCRIPTION_COLUMNS}
                    FROM subscriptions
                    WHERE status = ? AND is_trial = 1
                      AND trial_end_date >= ? AND trial_end_date <= ?
                    ORDER BY trial_end_date ASC
                    """,
                    (SubscriptionStatus.TRIAL.value, to_db_timestamp(now), to_db_timestamp(horizon)),
                )
        except STORE_ERRORS as e:
            raise SubscriptionStoreError("Failed to load expiring trials") from e
        return [subscription_from_row(row) for row in rows]

    # ---- Writes ------------------------------------------------------------

    def create_trial(
        self,
        tenant_id: str,
        plan_name: Optional[str] = None,
        now: Optional[datetime] = None,
        conn: Optional[DBConnection] = None,
    ) -> Subscription:
        """
        Start the signup trial for a tenant.

        Args:
            tenant_id: Agency id
            plan_name: Plan to trial (defaults to the catalog's entry-level plan)
            now: Creation time (defaults to current UTC time)
            conn: Open connection to write on; the caller then owns commit/rollback

        Returns:
            The new trial Subscription

        Raises:
            DuplicateSubscription: If the tenant already has a trial/active subscription
            PlanNotFound: If plan_name is not in the catalog
            SubscriptionStoreError: If the store fails
        """
        now = now or utc_now()
        trial_end = now + timedelta(days=self.settings.trial_period_days)

        try:
            plan = self.catalog.get_plan(plan_name) if plan_name else self.catalog.get_default_plan()

            if conn is None:
                with self.database.connect() as own_conn:
                    subscription = self._insert_trial(own_conn, tenant_id, plan.name, now, trial_end)
                    commit(own_conn)
            else:
                subscription = self._insert_trial(conn, tenant_id, plan.name, now, trial_end)
        except INTEGRITY_ERRORS as e:
            # Lost a race with a concurrent signup; the unique index caught it
            raise DuplicateSubscription(tenant_id) from e
        except STORE_ERRORS as e:
            print(f"[SUBSCRIPTION] Trial creation failed for tenant={tenant_id}: {e}")
            raise SubscriptionStoreError("Failed to create trial subscription") from e

        print(f"[SUBSCRIPTION] Trial created: tenant={tenant_id}, plan={plan.name}, "
              f"ends={trial_end.isoformat()}")
        return subscription

    def _insert_trial(
        self,
        conn: DBConnection,
        tenant_id: str,
        plan_name: str,
        now: datetime,
        trial_end: datetime,
    ) -> Subscription:
        existing = fetch_one(
            conn,
            "SELECT id FROM subscriptions WHERE tenant_id = ? AND status IN (?, ?)",
            (tenant_id, SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value),
        )
        if existing:
            raise DuplicateSubscription(tenant_id)

        stamp = to_db_timestamp(now)
        subscription_id = insert_returning_id(
            conn,
            """
            INSERT INTO subscriptions (
                tenant_id, plan_name, status, billing_cycle,
                is_trial, trial_start_date, trial_end_date,
                current_period_start, current_period_end,
                amount, currency, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, 0, 'USD', ?, ?)
            """,
            (
                tenant_id,
                plan_name,
                SubscriptionStatus.TRIAL.value,
                BillingCycle.MONTHLY.value,
                stamp,
                to_db_timestamp(trial_end),
                stamp,
                to_db_timestamp(trial_end),
                stamp,
                stamp,
            ),
        )
        # Read back on the same connection so an uncommitted insert is visible
        row = fetch_one(
            conn,
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE id = ?",
            (subscription_id,),
        )
        return subscription_from_row(row)

    def transition_to_expired(self, subscription_id: int, now: Optional[datetime] = None) -> bool:
        """
        Move a trial subscription to expired.

        Conditional on the row still being a trial, so concurrent callers converge
        on the same end state: exactly one of them gets True, the rest get False,
        and none of them raise. Already-expired (or otherwise non-trial) rows are
        left untouched.

        Returns:
            True if this call performed the transition
        """
        now = now or utc_now()
        try:
            with self.database.connect() as conn:
                result = execute_query(
                    conn,
                    """
                    UPDATE subscriptions
                    SET status = ?, is_trial = 0, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        SubscriptionStatus.EXPIRED.value,
                        to_db_timestamp(now),
                        subscription_id,
                        SubscriptionStatus.TRIAL.value,
                    ),
                )
                changed = result.rowcount > 0
                commit(conn)
        except STORE_ERRORS as e:
            print(f"[SUBSCRIPTION] Expiry transition failed for subscription={subscription_id}: {e}")
            raise SubscriptionStoreError("Failed to expire trial subscription") from e

        if changed:
            print(f"[SUBSCRIPTION] Trial expired: subscription={subscription_id}")
        return changed

    def expire_lapsed_trials(self, now: Optional[datetime] = None) -> int:
        """
        Sweep every trial whose end date has passed to expired.

        Uses the same conditional update as transition_to_expired, so it is safe
        to run alongside lazy per-request evaluation.

        Returns:
            Number of subscriptions transitioned
        """
        now = now or utc_now()
        stamp = to_db_timestamp(now)
        try:
            with self.database.connect() as conn:
                result = execute_query(
                    conn,
                    """
                    UPDATE subscriptions
                    SET status = ?, is_trial = 0, updated_at = ?
                    WHERE status = ? AND trial_end_date IS NOT NULL AND trial_end_date < ?
                    """,
                    (SubscriptionStatus.EXPIRED.value, stamp, SubscriptionStatus.TRIAL.value, stamp),
                )
                count = max(result.rowcount, 0)
                commit(conn)
        except STORE_ERRORS as e:
            raise SubscriptionStoreError("Failed to sweep lapsed trials") from e

        print(f"[SUBSCRIPTION] Sweep expired {count} lapsed trial(s)")
        return count

    def activate_plan(
        self,
        tenant_id: str,
        plan_name: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        now: Optional[datetime] = None,
        user_id: Optional[int] = None,
    ) -> Subscription:
        """
        Put a tenant on a paid plan (upgrade / trial conversion).

        Trial, active and past_due subscriptions are updated in place. A tenant
        whose last subscription is expired, cancelled or suspended gets a new
        active row, so the lapsed one stays in history untouched.

        Raises:
            PlanNotFound: If plan_name is not in the catalog
            SubscriptionStoreError: If the store fails
        """
        now = now or utc_now()
        cycle = BillingCycle(billing_cycle)
        period_end = add_months(now, CYCLE_MONTHS[cycle])

        try:
            plan = self.catalog.get_plan(plan_name)
            amount = plan.price_for_cycle(cycle)
            stamp = to_db_timestamp(now)
            end_stamp = to_db_timestamp(period_end)

            latest = self.find_latest_subscription(tenant_id)
            with self.database.connect() as conn:
                if latest and latest.status in (
                    SubscriptionStatus.TRIAL,
                    SubscriptionStatus.ACTIVE,
                    SubscriptionStatus.PAST_DUE,
                ):
                    subscription_id = latest.id
                    execute_query(
                        conn,
                        """
                        UPDATE subscriptions SET
                            plan_name = ?,
                            status = ?,
                            billing_cycle = ?,
                            trial_converted = CASE WHEN is_trial = 1 THEN 1 ELSE trial_converted END,
                            is_trial = 0,
                            amount = ?,
                            current_period_start = ?,
                            current_period_end = ?,
                            next_billing_date = ?,
                            updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            plan.name,
                            SubscriptionStatus.ACTIVE.value,
                            cycle.value,
                            amount,
                            stamp,
                            end_stamp,
                            end_stamp,
                            stamp,
                            subscription_id,
                        ),
                    )
                else:
                    subscription_id = insert_returning_id(
                        conn,
                        """
                        INSERT INTO subscriptions (
                            tenant_id, plan_name, status, billing_cycle, is_trial,
                            current_period_start, current_period_end, next_billing_date,
                            amount, currency, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, 'USD', ?, ?)
                        """,
                        (
                            tenant_id,
                            plan.name,
                            SubscriptionStatus.ACTIVE.value,
                            cycle.value,
                            stamp,
                            end_stamp,
                            end_stamp,
                            amount,
                            stamp,
                            stamp,
                        ),
                    )

                execute_query(
                    conn,
                    """
                    INSERT INTO billing_history (
                        subscription_id, tenant_id, user_id, transaction_type, amount, currency,
                        status, description, billing_period_start, billing_period_end, created_at
                    ) VALUES (?, ?, ?, 'upgrade', ?, 'USD', 'completed', ?, ?, ?, ?)
                    """,
                    (
                        subscription_id,
                        tenant_id,
                        user_id,
                        amount,
                        f"Upgraded to {plan.display_name} ({cycle.value})",
                        stamp,
                        end_stamp,
                        stamp,
                    ),
                )
                commit(conn)
        except INTEGRITY_ERRORS as e:
            raise DuplicateSubscription(tenant_id) from e
        except STORE_ERRORS as e:
            print(f"[SUBSCRIPTION] Upgrade failed for tenant={tenant_id}: {e}")
            raise SubscriptionStoreError("Failed to upgrade subscription") from e

        print(f"[SUBSCRIPTION] Tenant {tenant_id} upgraded to {plan.name} ({cycle.value})")
        return self.get_subscription(subscription_id)

    def cancel_subscription(
        self,
        tenant_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Cancel the tenant's active (paid) subscription.

        Raises:
            NoActiveSubscription: If there is no active subscription to cancel
            SubscriptionStoreError: If the store fails
        """
        now = now or utc_now()
        reason = reason or "User requested cancellation"

        current = self._select_one("tenant_id = ? AND status = ?", (tenant_id, SubscriptionStatus.ACTIVE.value))
        if current is None:
            raise NoActiveSubscription("No active subscription found to cancel")

        try:
            with self.database.connect() as conn:
                result = execute_query(
                    conn,
                    """
                    UPDATE subscriptions
                    SET status = ?, cancelled_at = ?, cancelled_reason = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        SubscriptionStatus.CANCELLED.value,
                        to_db_timestamp(now),
                        reason,
                        to_db_timestamp(now),
                        current.id,
                        SubscriptionStatus.ACTIVE.value,
                    ),
                )
                changed = result.rowcount > 0
                commit(conn)
        except STORE_ERRORS as e:
            raise SubscriptionStoreError("Failed to cancel subscription") from e

        if not changed:
            raise NoActiveSubscription("Subscription is no longer active")

        print(f"[SUBSCRIPTION] Tenant {tenant_id} cancelled subscription {current.id}: {reason}")
        return self.get_subscription(current.id)

    def billing_history(self, tenant_id: str, limit: int = 10, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """Billing rows for a tenant (newest first) plus the total count."""
        try:
            with self.database.connect() as conn:
                rows = fetch_all(
                    conn,
                    """
                    SELECT id, subscription_id, transaction_type, amount, currency, status,
                           description, billing_period_start, billing_period_end, created_at
                    FROM billing_history
                    WHERE tenant_id = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ? OFFSET ?
                    """,
                    (tenant_id, limit, offset),
                )
                total = fetch_count(
                    conn,
                    "SELECT COUNT(*) AS n FROM billing_history WHERE tenant_id = ?",
                    (tenant_id,),
                )
        except STORE_ERRORS as e:
            raise SubscriptionStoreError("Failed to load billing history") from e
        return rows, total
