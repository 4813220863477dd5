"""PostgreSQL entitlement store keeping each user record as one row."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

import psycopg2
import psycopg2.extras
from fastapi.concurrency import run_in_threadpool
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .config import DatabaseConfig
from .exceptions import TransientLookupFailure
from .models import (
    UNLIMITED_CREDITS,
    CreditGrant,
    EntitlementOverwrite,
    UserEntitlementRecord,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user_entitlements (
    user_id TEXT PRIMARY KEY,
    credits BIGINT NOT NULL DEFAULT 0 CHECK (credits >= 0),
    is_unlimited BOOLEAN NOT NULL DEFAULT FALSE,
    plan TEXT,
    last_payment_status TEXT,
    subscription_id TEXT,
    stripe_customer_id TEXT,
    last_billing_date TIMESTAMPTZ,
    payments JSONB NOT NULL DEFAULT '[]'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

# Columns an overwrite may touch, keyed by document field name.
_OVERWRITE_COLUMNS = {
    "lastPaymentStatus": "last_payment_status",
    "credits": "credits",
    "isUnlimited": "is_unlimited",
    "plan": "plan",
    "subscriptionId": "subscription_id",
    "stripeCustomerId": "stripe_customer_id",
}


@contextmanager
def managed_connection(
    factory: Callable[[], PgConnection],
    conn: Optional[PgConnection] = None,
) -> Iterator[tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = factory()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_record(row: dict) -> UserEntitlementRecord:
    return UserEntitlementRecord(
        user_id=row["user_id"],
        credits=int(row["credits"]),
        is_unlimited=bool(row["is_unlimited"]),
        plan=row.get("plan"),
        last_payment_status=row.get("last_payment_status"),
        subscription_id=row.get("subscription_id"),
        stripe_customer_id=row.get("stripe_customer_id"),
        last_billing_date=row.get("last_billing_date"),
        updated_at=row.get("updated_at"),
        payments=row.get("payments") or [],
    )


class PostgresEntitlementStore:
    """Concrete store persisting entitlement records in PostgreSQL.

    A grant is a single ``INSERT ... ON CONFLICT DO UPDATE ... WHERE`` whose
    guard rejects the row when its ``payments`` array already contains the
    source id; the conflicting row is locked while the guard is evaluated.
    """

    def __init__(
        self,
        connection_factory: Callable[[], PgConnection],
        *,
        conn: Optional[PgConnection] = None,
    ) -> None:
        self._factory = connection_factory
        self._conn = conn

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "PostgresEntitlementStore":
        kwargs = config.connect_kwargs()
        return cls(lambda: psycopg2.connect(**kwargs))

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._factory, self._conn) as (connection, _managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                finally:
                    cursor.close()
        except psycopg2.OperationalError as exc:
            raise TransientLookupFailure(f"entitlement store unavailable: {exc}") from exc

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(SCHEMA_SQL)

    async def get_user(self, user_id: str) -> Optional[UserEntitlementRecord]:
        return await run_in_threadpool(self._get_user, user_id)

    async def apply_grant(self, grant: CreditGrant) -> bool:
        return await run_in_threadpool(self._apply_grant, grant)

    async def overwrite(self, update: EntitlementOverwrite) -> None:
        await run_in_threadpool(self._overwrite, update)

    def _get_user(self, user_id: str) -> Optional[UserEntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_entitlements
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def _apply_grant(self, grant: CreditGrant) -> bool:
        entry = grant.entry.model_dump(mode="json", by_alias=True)
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO user_entitlements AS ue (
                    user_id,
                    credits,
                    is_unlimited,
                    plan,
                    last_payment_status,
                    subscription_id,
                    stripe_customer_id,
                    last_billing_date,
                    payments
                )
                VALUES (%(user_id)s,
                        CASE WHEN %(is_unlimited)s THEN %(sentinel)s ELSE %(credits)s END,
                        %(is_unlimited)s, %(plan)s, %(status)s, %(subscription_id)s,
                        %(customer_id)s, %(billing_date)s, jsonb_build_array(%(entry)s::jsonb))
                ON CONFLICT (user_id) DO UPDATE SET
                    credits = CASE
                        WHEN ue.is_unlimited OR EXCLUDED.is_unlimited THEN %(sentinel)s
                        ELSE ue.credits + EXCLUDED.credits
                    END,
                    is_unlimited = ue.is_unlimited OR EXCLUDED.is_unlimited,
                    plan = COALESCE(EXCLUDED.plan, ue.plan),
                    last_payment_status = EXCLUDED.last_payment_status,
                    subscription_id = COALESCE(EXCLUDED.subscription_id, ue.subscription_id),
                    stripe_customer_id = COALESCE(EXCLUDED.stripe_customer_id, ue.stripe_customer_id),
                    last_billing_date = EXCLUDED.last_billing_date,
                    payments = ue.payments || EXCLUDED.payments,
                    updated_at = NOW()
                WHERE NOT ue.payments @> jsonb_build_array(jsonb_build_object('sourceId', %(source_id)s::text))
                RETURNING user_id
                """,
                {
                    "user_id": grant.user_id,
                    "credits": grant.credits_to_add,
                    "is_unlimited": grant.is_unlimited,
                    "sentinel": UNLIMITED_CREDITS,
                    "plan": grant.plan,
                    "status": grant.status.value,
                    "subscription_id": grant.subscription_id,
                    "customer_id": grant.customer_id,
                    "billing_date": grant.billing_date,
                    "entry": psycopg2.extras.Json(entry),
                    "source_id": grant.source_id,
                },
            )
            return cursor.fetchone() is not None

    def _overwrite(self, update: EntitlementOverwrite) -> None:
        fields: Dict[str, Any] = {
            _OVERWRITE_COLUMNS[key]: value for key, value in update.to_document().items()
        }
        columns = list(fields)
        column_list = ", ".join(columns)
        assignments = ",\n                    ".join(f"{column} = EXCLUDED.{column}" for column in columns)
        placeholders = ", ".join(f"%({column})s" for column in columns)
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO user_entitlements (user_id, {column_list})
                VALUES (%(user_id)s, {placeholders})
                ON CONFLICT (user_id) DO UPDATE SET
                    {assignments},
                    updated_at = NOW()
                """,
                {"user_id": update.user_id, **fields},
            )


__all__ = ["PostgresEntitlementStore", "SCHEMA_SQL", "managed_connection"]
