"""PostgreSQL persistence for plans, subscriptions and applied idempotency keys."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .errors import ConflictError
from .models import (
    LIVE_STATUSES,
    OPEN_STATUSES,
    Owner,
    PaymentProviderName,
    Plan,
    PlanStatus,
    PlanType,
    RetryBookkeeping,
    Subscription,
    SubscriptionStatus,
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS subscription_plans (
    plan_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    price NUMERIC(10, 2) NOT NULL CHECK (price >= 0),
    plan_type TEXT NOT NULL,
    duration_days INTEGER NOT NULL CHECK (duration_days >= 1),
    trial_days INTEGER NOT NULL CHECK (trial_days >= 0),
    features JSONB NOT NULL DEFAULT '{}'::jsonb,
    status TEXT NOT NULL,
    is_public BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS subscriptions (
    subscription_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    plan_id TEXT NOT NULL REFERENCES subscription_plans (plan_id),
    status TEXT NOT NULL,
    start_date TIMESTAMPTZ NOT NULL,
    end_date TIMESTAMPTZ NOT NULL,
    canceled_at TIMESTAMPTZ,
    ended_at TIMESTAMPTZ,
    auto_renew BOOLEAN NOT NULL DEFAULT FALSE,
    external_subscription_id TEXT,
    payment_provider TEXT NOT NULL,
    amount NUMERIC(10, 2) NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'usd',
    payment_method_ref TEXT,
    customer_ref TEXT,
    last_payment_date TIMESTAMPTZ,
    next_payment_date TIMESTAMPTZ,
    retry_attempts INTEGER NOT NULL DEFAULT 0,
    next_retry_date TIMESTAMPTZ,
    last_error TEXT,
    last_provider_payload JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK ((status = 'canceled') = (canceled_at IS NOT NULL))
);

CREATE UNIQUE INDEX IF NOT EXISTS subscriptions_one_open_per_owner
    ON subscriptions (tenant_id, user_id)
    WHERE status IN ('pending', 'trial', 'active', 'failed');

CREATE INDEX IF NOT EXISTS subscriptions_external_id
    ON subscriptions (payment_provider, external_subscription_id);

CREATE TABLE IF NOT EXISTS subscription_applied_keys (
    subscription_id TEXT NOT NULL REFERENCES subscriptions (subscription_id),
    idempotency_key TEXT NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (subscription_id, idempotency_key)
);
"""


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_plan(row: dict) -> Plan:
    return Plan(
        plan_id=row["plan_id"],
        name=row["name"],
        description=row.get("description"),
        price=row["price"],
        plan_type=PlanType(row["plan_type"]),
        duration_days=int(row["duration_days"]),
        trial_days=int(row["trial_days"]),
        features=row.get("features") or {},
        status=PlanStatus(row["status"]),
        is_public=bool(row["is_public"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        user_id=row["user_id"],
        tenant_id=row["tenant_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        start_date=row["start_date"],
        end_date=row["end_date"],
        canceled_at=row.get("canceled_at"),
        ended_at=row.get("ended_at"),
        auto_renew=bool(row["auto_renew"]),
        external_subscription_id=row.get("external_subscription_id"),
        payment_provider=PaymentProviderName(row["payment_provider"]),
        amount=row["amount"],
        currency=row["currency"],
        payment_method_ref=row.get("payment_method_ref"),
        customer_ref=row.get("customer_ref"),
        last_payment_date=row.get("last_payment_date"),
        next_payment_date=row.get("next_payment_date"),
        retry=RetryBookkeeping(
            attempts=int(row.get("retry_attempts") or 0),
            next_retry_date=row.get("next_retry_date"),
            last_error=row.get("last_error"),
        ),
        last_provider_payload=row.get("last_provider_payload"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _subscription_params(subscription: Subscription) -> Dict[str, Any]:
    payload = subscription.last_provider_payload
    return {
        "subscription_id": subscription.subscription_id,
        "user_id": subscription.user_id,
        "tenant_id": subscription.tenant_id,
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
        "start_date": subscription.start_date,
        "end_date": subscription.end_date,
        "canceled_at": subscription.canceled_at,
        "ended_at": subscription.ended_at,
        "auto_renew": subscription.auto_renew,
        "external_subscription_id": subscription.external_subscription_id,
        "payment_provider": subscription.payment_provider.value,
        "amount": subscription.amount,
        "currency": subscription.currency,
        "payment_method_ref": subscription.payment_method_ref,
        "customer_ref": subscription.customer_ref,
        "last_payment_date": subscription.last_payment_date,
        "next_payment_date": subscription.next_payment_date,
        "retry_attempts": subscription.retry.attempts,
        "next_retry_date": subscription.retry.next_retry_date,
        "last_error": subscription.retry.last_error,
        "last_provider_payload": psycopg2.extras.Json(payload) if payload is not None else None,
        "created_at": subscription.created_at,
        "updated_at": subscription.updated_at,
    }


_OPEN_STATUS_VALUES = [status.value for status in OPEN_STATUSES]
_LIVE_STATUS_VALUES = [status.value for status in LIVE_STATUSES]


class _PostgresSubscriptionTransaction:
    """Row-locked view of one subscription; all writes share the lock's cursor."""

    def __init__(self, cursor: PgCursor, subscription: Optional[Subscription]) -> None:
        self._cursor = cursor
        self.subscription = subscription

    def has_key(self, idempotency_key: str) -> bool:
        if self.subscription is None:
            return False
        self._cursor.execute(
            """
            SELECT 1
            FROM subscription_applied_keys
            WHERE subscription_id = %s AND idempotency_key = %s
            """,
            (self.subscription.subscription_id, idempotency_key),
        )
        return self._cursor.fetchone() is not None

    def record_key(self, idempotency_key: str) -> bool:
        if self.subscription is None:
            raise ValueError("Cannot record a key for a missing subscription")
        self._cursor.execute(
            """
            INSERT INTO subscription_applied_keys (subscription_id, idempotency_key)
            VALUES (%s, %s)
            ON CONFLICT (subscription_id, idempotency_key) DO NOTHING
            """,
            (self.subscription.subscription_id, idempotency_key),
        )
        return self._cursor.rowcount > 0

    def save(self, subscription: Subscription) -> Subscription:
        self._cursor.execute(
            """
            UPDATE subscriptions
            SET status = %(status)s,
                start_date = %(start_date)s,
                end_date = %(end_date)s,
                canceled_at = %(canceled_at)s,
                ended_at = %(ended_at)s,
                auto_renew = %(auto_renew)s,
                external_subscription_id = %(external_subscription_id)s,
                amount = %(amount)s,
                currency = %(currency)s,
                payment_method_ref = %(payment_method_ref)s,
                customer_ref = %(customer_ref)s,
                last_payment_date = %(last_payment_date)s,
                next_payment_date = %(next_payment_date)s,
                retry_attempts = %(retry_attempts)s,
                next_retry_date = %(next_retry_date)s,
                last_error = %(last_error)s,
                last_provider_payload = %(last_provider_payload)s,
                updated_at = %(updated_at)s
            WHERE subscription_id = %(subscription_id)s
            RETURNING *
            """,
            _subscription_params(subscription),
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist subscription")
        self.subscription = _row_to_subscription(row)
        return self.subscription


class _PostgresOwnerTransaction:
    def __init__(self, cursor: PgCursor, owner: Owner) -> None:
        self._cursor = cursor
        self._owner = owner

    def find_open(self) -> Optional[Subscription]:
        self._cursor.execute(
            """
            SELECT *
            FROM subscriptions
            WHERE tenant_id = %s AND user_id = %s AND status = ANY(%s)
            LIMIT 1
            """,
            (self._owner.tenant_id, self._owner.user_id, _OPEN_STATUS_VALUES),
        )
        row = self._cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def insert(self, subscription: Subscription) -> Subscription:
        try:
            self._cursor.execute(
                """
                INSERT INTO subscriptions (
                    subscription_id, user_id, tenant_id, plan_id, status,
                    start_date, end_date, canceled_at, ended_at, auto_renew,
                    external_subscription_id, payment_provider, amount, currency,
                    payment_method_ref, customer_ref, last_payment_date,
                    next_payment_date, retry_attempts, next_retry_date, last_error,
                    last_provider_payload, created_at, updated_at
                )
                VALUES (%(subscription_id)s, %(user_id)s, %(tenant_id)s, %(plan_id)s,
                        %(status)s, %(start_date)s, %(end_date)s, %(canceled_at)s,
                        %(ended_at)s, %(auto_renew)s, %(external_subscription_id)s,
                        %(payment_provider)s, %(amount)s, %(currency)s,
                        %(payment_method_ref)s, %(customer_ref)s, %(last_payment_date)s,
                        %(next_payment_date)s, %(retry_attempts)s, %(next_retry_date)s,
                        %(last_error)s, %(last_provider_payload)s, %(created_at)s,
                        %(updated_at)s)
                RETURNING *
                """,
                _subscription_params(subscription),
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise ConflictError("Owner already has an open subscription") from exc
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist subscription")
        return _row_to_subscription(row)


class _PostgresBase:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def _select_subscriptions(self, sql: str, params: Sequence[Any]) -> list[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(sql, params)
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(SCHEMA_SQL)


class PostgresPlanRepository(_PostgresBase):
    """Plan catalog storage."""

    def save_plan(self, plan: Plan) -> Plan:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_plans (
                    plan_id, name, description, price, plan_type, duration_days,
                    trial_days, features, status, is_public, created_at, updated_at
                )
                VALUES (%(plan_id)s, %(name)s, %(description)s, %(price)s, %(plan_type)s,
                        %(duration_days)s, %(trial_days)s, %(features)s, %(status)s,
                        %(is_public)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (plan_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    price = EXCLUDED.price,
                    plan_type = EXCLUDED.plan_type,
                    duration_days = EXCLUDED.duration_days,
                    trial_days = EXCLUDED.trial_days,
                    features = EXCLUDED.features,
                    status = EXCLUDED.status,
                    is_public = EXCLUDED.is_public,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "plan_id": plan.plan_id,
                    "name": plan.name,
                    "description": plan.description,
                    "price": plan.price,
                    "plan_type": plan.plan_type.value,
                    "duration_days": plan.duration_days,
                    "trial_days": plan.trial_days,
                    "features": psycopg2.extras.Json(plan.features),
                    "status": plan.status.value,
                    "is_public": plan.is_public,
                    "created_at": plan.created_at,
                    "updated_at": plan.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist plan")
            return _row_to_plan(row)

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM subscription_plans WHERE plan_id = %s LIMIT 1",
                (plan_id,),
            )
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def list_plans(self) -> Sequence[Plan]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM subscription_plans ORDER BY price ASC")
            rows = cursor.fetchall() or []
            return [_row_to_plan(row) for row in rows]

    def delete_plan(self, plan_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM subscription_plans WHERE plan_id = %s", (plan_id,))
            return cursor.rowcount > 0

    def is_plan_referenced(self, plan_id: str, *, live_only: bool) -> bool:
        with self._cursor() as cursor:
            if live_only:
                cursor.execute(
                    "SELECT 1 FROM subscriptions WHERE plan_id = %s AND status = ANY(%s) LIMIT 1",
                    (plan_id, _LIVE_STATUS_VALUES),
                )
            else:
                cursor.execute(
                    "SELECT 1 FROM subscriptions WHERE plan_id = %s LIMIT 1",
                    (plan_id,),
                )
            return cursor.fetchone() is not None


class PostgresSubscriptionRepository(_PostgresBase):
    """Subscription storage; transitions run under ``SELECT ... FOR UPDATE``."""

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM subscriptions WHERE subscription_id = %s LIMIT 1",
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def latest_for_owner(self, owner: Owner) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE tenant_id = %s AND user_id = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (owner.tenant_id, owner.user_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_by_external_id(
        self, provider: str, external_subscription_id: str
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE external_subscription_id = %s
                  AND (%s = '' OR payment_provider = %s)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (external_subscription_id, provider or "", provider or ""),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def list_due_for_renewal(self, *, due_before: datetime) -> Sequence[Subscription]:
        return self._select_subscriptions(
            """
            SELECT *
            FROM subscriptions
            WHERE status = 'active' AND auto_renew AND next_payment_date <= %s
            ORDER BY next_payment_date ASC
            """,
            (due_before,),
        )

    def list_due_for_retry(self, *, now: datetime, max_attempts: int) -> Sequence[Subscription]:
        return self._select_subscriptions(
            """
            SELECT *
            FROM subscriptions
            WHERE status = 'failed'
              AND auto_renew
              AND next_retry_date <= %s
              AND retry_attempts < %s
            ORDER BY next_retry_date ASC
            """,
            (now, max_attempts),
        )

    def list_past_grace(self, *, cutoff: datetime) -> Sequence[Subscription]:
        return self._select_subscriptions(
            """
            SELECT *
            FROM subscriptions
            WHERE status IN ('active', 'failed') AND next_payment_date < %s
            """,
            (cutoff,),
        )

    def list_expired_trials(self, *, now: datetime) -> Sequence[Subscription]:
        return self._select_subscriptions(
            "SELECT * FROM subscriptions WHERE status = 'trial' AND end_date < %s",
            (now,),
        )

    def list_trials_ending_between(self, *, start: datetime, end: datetime) -> Sequence[Subscription]:
        return self._select_subscriptions(
            "SELECT * FROM subscriptions WHERE status = 'trial' AND end_date BETWEEN %s AND %s",
            (start, end),
        )

    def list_renewing_between(self, *, start: datetime, end: datetime) -> Sequence[Subscription]:
        return self._select_subscriptions(
            """
            SELECT *
            FROM subscriptions
            WHERE status = 'active'
              AND auto_renew
              AND next_payment_date >= %s
              AND next_payment_date < %s
            """,
            (start, end),
        )

    def count_by_status(self) -> Mapping[SubscriptionStatus, int]:
        counts = {status: 0 for status in SubscriptionStatus}
        with self._cursor() as cursor:
            cursor.execute("SELECT status, COUNT(*) AS total FROM subscriptions GROUP BY status")
            for row in cursor.fetchall() or []:
                counts[SubscriptionStatus(row["status"])] = int(row["total"])
        return counts

    @contextmanager
    def lock_subscription(self, subscription_id: str) -> Iterator[_PostgresSubscriptionTransaction]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM subscriptions WHERE subscription_id = %s FOR UPDATE",
                (subscription_id,),
            )
            row = cursor.fetchone()
            yield _PostgresSubscriptionTransaction(cursor, _row_to_subscription(row) if row else None)

    @contextmanager
    def lock_owner(self, owner: Owner) -> Iterator[_PostgresOwnerTransaction]:
        with self._cursor() as cursor:
            cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (owner.key,))
            yield _PostgresOwnerTransaction(cursor, owner)


__all__ = [
    "PostgresPlanRepository",
    "PostgresSubscriptionRepository",
    "SCHEMA_SQL",
    "managed_connection",
]
