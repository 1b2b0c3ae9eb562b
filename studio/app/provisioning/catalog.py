"""Catalog lookup for purchasable passes."""
from __future__ import annotations

from typing import Optional, Protocol

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from pydantic import ValidationError

from .errors import PolicyError
from .models import PassKind, PassPolicy, ValidityType
from .repository import managed_connection, translate_store_errors

try:  # pragma: no cover - resolve connection helper when imported from the FastAPI app
    from studio.app_context import get_replica_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "studio":
        raise
    from ...app_context import get_replica_conn  # type: ignore[no-redef]


class PassCatalog(Protocol):
    """Read-only source of pass definitions."""

    def get_policy(self, policy_id: str, tenant_id: str) -> Optional[PassPolicy]:
        """Return the active pass owned by ``tenant_id``, or ``None``."""


def _row_to_policy(row: dict) -> PassPolicy:
    validity_type = row.get("validity_type")
    try:
        return PassPolicy(
            policy_id=row["policy_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            kind=PassKind(row["kind"]),
            price=float(row.get("price") or 0),
            validity_type=ValidityType(validity_type) if validity_type else None,
            expiry_date=row.get("expiry_date"),
            validity_days=row.get("validity_days"),
            classes_limit=row.get("classes_limit"),
            is_active=bool(row["is_active"]),
        )
    except (KeyError, ValueError, ValidationError) as exc:
        raise PolicyError(
            f"Pass {row.get('policy_id')} has an invalid catalog entry: {exc}",
            code="invalid_policy",
            detail={"policy_id": row.get("policy_id"), "tenant_id": row.get("tenant_id")},
        ) from exc


class PostgresPassCatalog:
    """Catalog backed by the ``pass_policies`` table.

    Reads go through the replica connection factory when one is configured.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def get_policy(self, policy_id: str, tenant_id: str) -> Optional[PassPolicy]:
        with translate_store_errors(), managed_connection(self._conn, factory=get_replica_conn) as (connection, _):
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(
                    """
                    SELECT *
                    FROM pass_policies
                    WHERE policy_id = %s
                      AND tenant_id = %s
                      AND is_active = TRUE
                    LIMIT 1
                    """,
                    (policy_id, tenant_id),
                )
                row = cursor.fetchone()
        return _row_to_policy(row) if row else None


class InMemoryPassCatalog:
    """Dictionary-backed catalog for local runs and tests."""

    def __init__(self, *policies: PassPolicy) -> None:
        self._policies = {policy.policy_id: policy for policy in policies}

    def add(self, policy: PassPolicy) -> None:
        self._policies[policy.policy_id] = policy

    def get_policy(self, policy_id: str, tenant_id: str) -> Optional[PassPolicy]:
        policy = self._policies.get(policy_id)
        if policy is None or policy.tenant_id != tenant_id or not policy.is_active:
            return None
        return policy


__all__ = ["InMemoryPassCatalog", "PassCatalog", "PostgresPassCatalog"]
