"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None
_get_replica_conn: Optional[Callable[[], Any]] = None


def configure(
    *,
    get_conn: Callable[[], Any],
    get_replica_conn: Optional[Callable[[], Any]] = None,
) -> None:
    """Register the connection factories used by the persistence adapters.

    ``get_conn`` must return a connection to the primary database. Reads that
    feed an idempotency decision always go through it. ``get_replica_conn`` is
    optional and only used for catalog reads.
    """

    global _get_conn
    global _get_replica_conn

    _get_conn = get_conn
    _get_replica_conn = get_replica_conn


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_replica_conn() -> Any:
    if _get_replica_conn is None:
        return get_conn()
    return _get_replica_conn()
