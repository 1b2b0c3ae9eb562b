"""Persistence layer for subscriptions and the provisioning audit log."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Protocol, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .errors import DuplicateSubscriptionError, TransientStoreError
from .models import (
    AuditEntry,
    PassKind,
    ProcessingOutcome,
    ProcessingState,
    Subscription,
    SubscriptionType,
)

try:  # pragma: no cover - resolve connection helper when imported from the FastAPI app
    from studio.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "studio":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


class SubscriptionRepository(Protocol):
    """Durable subscription store used by the provisioning engine.

    ``find_by_correlation`` must read from the primary store. It feeds the
    idempotency decision, so a stale replica or cache read here produces
    duplicate subscriptions.
    """

    def find_by_correlation(
        self,
        *,
        session_id: Optional[str],
        payment_id: Optional[str],
    ) -> Optional[Subscription]:
        ...

    def create_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a new record, raising ``DuplicateSubscriptionError`` on a uniqueness conflict."""

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def deactivate_subscription(
        self,
        subscription_id: str,
        *,
        upgraded_at: datetime,
        upgraded_to_policy_id: str,
        upgraded_to_policy_name: str,
    ) -> Optional[Subscription]:
        ...

    def update_end_date(self, subscription_id: str, end_date: datetime) -> Optional[Subscription]:
        ...

    def list_by_correlation(
        self,
        *,
        session_id: Optional[str],
        payment_id: Optional[str],
    ) -> Sequence[Subscription]:
        ...

    def delete_subscription(self, subscription_id: str) -> bool:
        ...


class AuditLog(Protocol):
    """Append-only sink for processing attempts."""

    def append(self, entry: AuditEntry) -> None:
        ...


class AuditReader(Protocol):
    """Read side of the audit trail used by operator reports."""

    def list_failures(
        self,
        tenant_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> Sequence[AuditEntry]:
        ...


@contextmanager
def managed_connection(
    conn: Optional[PgConnection] = None,
    *,
    factory: Optional[Callable[[], PgConnection]] = None,
):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = (factory or get_conn)()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Map connectivity failures to :class:`TransientStoreError`."""

    try:
        yield
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
        raise TransientStoreError(f"Store unavailable: {exc}".strip()) from exc


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        beneficiary_id=row["beneficiary_id"],
        tenant_id=row["tenant_id"],
        policy_id=row["policy_id"],
        policy_name=row["policy_name"],
        policy_kind=PassKind(row["policy_kind"]),
        subscription_type=SubscriptionType(row["subscription_type"]),
        start_date=row["start_date"],
        end_date=row["end_date"],
        classes_used=int(row.get("classes_used") or 0),
        classes_limit=row.get("classes_limit"),
        is_active=bool(row["is_active"]),
        session_id=row.get("session_id"),
        payment_id=row.get("payment_id"),
        amount=row.get("amount"),
        currency=row.get("currency"),
        webhook_event_id=row.get("webhook_event_id"),
        is_upgrade=bool(row.get("is_upgrade")),
        upgraded_from_subscription_id=row.get("upgraded_from_subscription_id"),
        upgraded_at=row.get("upgraded_at"),
        upgraded_to_policy_id=row.get("upgraded_to_policy_id"),
        upgraded_to_policy_name=row.get("upgraded_to_policy_name"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresSubscriptionRepository:
    """Concrete repository persisting subscriptions in PostgreSQL.

    Always uses the primary connection factory from the application context.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with translate_store_errors(), managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def find_by_correlation(
        self,
        *,
        session_id: Optional[str],
        payment_id: Optional[str],
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE (%(session_id)s::text IS NOT NULL AND session_id = %(session_id)s)
                   OR (%(payment_id)s::text IS NOT NULL AND payment_id = %(payment_id)s)
                ORDER BY created_at ASC
                LIMIT 1
                """,
                {"session_id": session_id, "payment_id": payment_id},
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def create_subscription(self, subscription: Subscription) -> Subscription:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO subscriptions (
                        subscription_id,
                        beneficiary_id,
                        tenant_id,
                        policy_id,
                        policy_name,
                        policy_kind,
                        subscription_type,
                        start_date,
                        end_date,
                        classes_used,
                        classes_limit,
                        is_active,
                        session_id,
                        payment_id,
                        amount,
                        currency,
                        webhook_event_id,
                        is_upgrade,
                        upgraded_from_subscription_id,
                        created_at,
                        updated_at
                    )
                    VALUES (%(subscription_id)s, %(beneficiary_id)s, %(tenant_id)s, %(policy_id)s,
                            %(policy_name)s, %(policy_kind)s, %(subscription_type)s,
                            %(start_date)s, %(end_date)s, %(classes_used)s, %(classes_limit)s,
                            %(is_active)s, %(session_id)s, %(payment_id)s, %(amount)s,
                            %(currency)s, %(webhook_event_id)s, %(is_upgrade)s,
                            %(upgraded_from_subscription_id)s, %(created_at)s, %(updated_at)s)
                    RETURNING *
                    """,
                    {
                        "subscription_id": subscription.subscription_id,
                        "beneficiary_id": subscription.beneficiary_id,
                        "tenant_id": subscription.tenant_id,
                        "policy_id": subscription.policy_id,
                        "policy_name": subscription.policy_name,
                        "policy_kind": subscription.policy_kind.value,
                        "subscription_type": subscription.subscription_type.value,
                        "start_date": subscription.start_date,
                        "end_date": subscription.end_date,
                        "classes_used": subscription.classes_used,
                        "classes_limit": subscription.classes_limit,
                        "is_active": subscription.is_active,
                        "session_id": subscription.session_id,
                        "payment_id": subscription.payment_id,
                        "amount": subscription.amount,
                        "currency": subscription.currency,
                        "webhook_event_id": subscription.webhook_event_id,
                        "is_upgrade": subscription.is_upgrade,
                        "upgraded_from_subscription_id": subscription.upgraded_from_subscription_id,
                        "created_at": subscription.created_at,
                        "updated_at": subscription.updated_at,
                    },
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise DuplicateSubscriptionError(
                "Subscription already exists for these correlation ids",
                session_id=subscription.session_id,
                payment_id=subscription.payment_id,
            ) from exc
        if not row:
            raise RuntimeError("Failed to persist subscription")
        return _row_to_subscription(row)

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def deactivate_subscription(
        self,
        subscription_id: str,
        *,
        upgraded_at: datetime,
        upgraded_to_policy_id: str,
        upgraded_to_policy_name: str,
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET is_active = FALSE,
                    upgraded_at = COALESCE(upgraded_at, %s),
                    upgraded_to_policy_id = %s,
                    upgraded_to_policy_name = %s,
                    updated_at = NOW()
                WHERE subscription_id = %s
                RETURNING *
                """,
                (upgraded_at, upgraded_to_policy_id, upgraded_to_policy_name, subscription_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def update_end_date(self, subscription_id: str, end_date: datetime) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET end_date = %s,
                    updated_at = NOW()
                WHERE subscription_id = %s
                RETURNING *
                """,
                (end_date, subscription_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def list_by_correlation(
        self,
        *,
        session_id: Optional[str],
        payment_id: Optional[str],
    ) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE (%(session_id)s::text IS NOT NULL AND session_id = %(session_id)s)
                   OR (%(payment_id)s::text IS NOT NULL AND payment_id = %(payment_id)s)
                ORDER BY created_at ASC, subscription_id ASC
                """,
                {"session_id": session_id, "payment_id": payment_id},
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def delete_subscription(self, subscription_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM subscriptions WHERE subscription_id = %s",
                (subscription_id,),
            )
            return cursor.rowcount > 0


class PostgresAuditLog:
    """Append-only audit sink backed by the ``provisioning_audit_log`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def append(self, entry: AuditEntry) -> None:
        with translate_store_errors(), managed_connection(self._conn) as (connection, managed):
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO provisioning_audit_log (
                        entry_id,
                        event_id,
                        event_type,
                        outcome,
                        final_state,
                        correlation,
                        subscription_id,
                        error_code,
                        error_message,
                        retryable,
                        attempts,
                        duration_ms,
                        recorded_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (entry_id) DO NOTHING
                    """,
                    (
                        entry.entry_id,
                        entry.event_id,
                        entry.event_type,
                        entry.outcome.value,
                        entry.final_state.value,
                        psycopg2.extras.Json(entry.correlation),
                        entry.subscription_id,
                        entry.error_code,
                        entry.error_message,
                        entry.retryable,
                        entry.attempts,
                        entry.duration_ms,
                        entry.recorded_at,
                    ),
                )
            if managed:
                connection.commit()

    def list_failures(
        self,
        tenant_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Terminal failures for a tenant, newest first, for the operator reconciliation report."""

        with translate_store_errors(), managed_connection(self._conn) as (connection, _):
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(
                    """
                    SELECT *
                    FROM provisioning_audit_log
                    WHERE outcome = %s
                      AND correlation ->> 'tenantId' = %s
                      AND (%s::timestamptz IS NULL OR recorded_at >= %s)
                    ORDER BY recorded_at DESC
                    LIMIT %s
                    """,
                    (ProcessingOutcome.FAILED_TERMINAL.value, tenant_id, since, since, limit),
                )
                rows = cursor.fetchall() or []
        return [
            AuditEntry(
                entry_id=row["entry_id"],
                event_id=row["event_id"],
                event_type=row["event_type"],
                outcome=ProcessingOutcome(row["outcome"]),
                final_state=ProcessingState(row["final_state"]),
                correlation=row.get("correlation") or {},
                subscription_id=row.get("subscription_id"),
                error_code=row.get("error_code"),
                error_message=row.get("error_message"),
                retryable=bool(row.get("retryable")),
                attempts=int(row.get("attempts") or 1),
                duration_ms=int(row.get("duration_ms") or 0),
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]


__all__ = [
    "AuditLog",
    "AuditReader",
    "PostgresAuditLog",
    "PostgresSubscriptionRepository",
    "SubscriptionRepository",
    "managed_connection",
    "translate_store_errors",
]
