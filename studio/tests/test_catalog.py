from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import psycopg2
import pytest

from studio.app.provisioning import InMemoryPassCatalog, PassKind, PolicyError, TransientStoreError, ValidityType
from studio.app.provisioning.catalog import PostgresPassCatalog


class FakeCursor:
    def __init__(self, row: Optional[Dict[str, Any]], error: Optional[Exception] = None) -> None:
        self.row = row
        self.error = error
        self.executed: List[Tuple[str, Any]] = []

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def execute(self, sql: str, params: Any) -> None:
        if self.error is not None:
            raise self.error
        self.executed.append((sql, params))

    def fetchone(self) -> Optional[Dict[str, Any]]:
        return self.row


class FakeConnection:
    def __init__(self, cursor: FakeCursor) -> None:
        self._cursor = cursor

    def cursor(self, cursor_factory=None) -> FakeCursor:
        return self._cursor


def test_inactive_and_foreign_policies_are_hidden(policy_factory):
    catalog = InMemoryPassCatalog(
        policy_factory(policy_id="active"),
        policy_factory(policy_id="retired", is_active=False),
        policy_factory(policy_id="foreign", tenant_id="studio-2"),
    )

    assert catalog.get_policy("active", "studio-1") is not None
    assert catalog.get_policy("retired", "studio-1") is None
    assert catalog.get_policy("foreign", "studio-1") is None
    assert catalog.get_policy("foreign", "studio-2") is not None


def test_postgres_catalog_filters_by_tenant_and_maps_row():
    cursor = FakeCursor(
        {
            "policy_id": "pass-1",
            "tenant_id": "studio-1",
            "name": "Clip Card",
            "kind": "multi",
            "price": "120.00",
            "validity_type": None,
            "expiry_date": None,
            "validity_days": 60,
            "classes_limit": 5,
            "is_active": True,
        }
    )
    catalog = PostgresPassCatalog(conn=FakeConnection(cursor))

    policy = catalog.get_policy("pass-1", "studio-1")

    assert cursor.executed[0][1] == ("pass-1", "studio-1")
    assert "is_active = TRUE" in cursor.executed[0][0]
    assert policy.kind == PassKind.CLIPCARD
    assert policy.validity_type is None
    assert policy.price == 120.0


def test_postgres_catalog_maps_validity_type():
    cursor = FakeCursor(
        {
            "policy_id": "pass-2",
            "tenant_id": "studio-1",
            "name": "Term",
            "kind": "unlimited",
            "price": 0,
            "validity_type": "date",
            "expiry_date": None,
            "validity_days": None,
            "classes_limit": None,
            "is_active": True,
        }
    )

    policy = PostgresPassCatalog(conn=FakeConnection(cursor)).get_policy("pass-2", "studio-1")

    assert policy.validity_type == ValidityType.FIXED_DATE


def test_postgres_catalog_missing_row_returns_none():
    catalog = PostgresPassCatalog(conn=FakeConnection(FakeCursor(None)))

    assert catalog.get_policy("pass-x", "studio-1") is None


def test_postgres_catalog_connection_loss_is_transient():
    cursor = FakeCursor(None, error=psycopg2.OperationalError("server closed the connection"))
    catalog = PostgresPassCatalog(conn=FakeConnection(cursor))

    with pytest.raises(TransientStoreError):
        catalog.get_policy("pass-1", "studio-1")


def test_postgres_catalog_rejects_unknown_kind():
    cursor = FakeCursor(
        {
            "policy_id": "pass-3",
            "tenant_id": "studio-1",
            "name": "Course",
            "kind": "course",
            "price": 0,
            "validity_type": None,
            "expiry_date": None,
            "validity_days": 30,
            "classes_limit": None,
            "is_active": True,
        }
    )
    catalog = PostgresPassCatalog(conn=FakeConnection(cursor))

    with pytest.raises(PolicyError) as excinfo:
        catalog.get_policy("pass-3", "studio-1")

    assert excinfo.value.code == "invalid_policy"
    assert excinfo.value.detail["policy_id"] == "pass-3"
