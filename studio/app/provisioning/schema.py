"""PostgreSQL schema for passes, subscriptions and the provisioning audit log."""
from __future__ import annotations

import logging

from psycopg2.extensions import connection as PgConnection

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pass_policies (
    policy_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    price NUMERIC(12, 2) NOT NULL DEFAULT 0,
    validity_type TEXT,
    expiry_date TIMESTAMPTZ,
    validity_days INTEGER,
    classes_limit INTEGER,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS pass_policies_tenant_idx ON pass_policies (tenant_id);

CREATE TABLE IF NOT EXISTS subscriptions (
    subscription_id TEXT PRIMARY KEY,
    beneficiary_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    policy_id TEXT NOT NULL,
    policy_name TEXT NOT NULL,
    policy_kind TEXT NOT NULL,
    subscription_type TEXT NOT NULL,
    start_date TIMESTAMPTZ NOT NULL,
    end_date TIMESTAMPTZ NOT NULL,
    classes_used INTEGER NOT NULL DEFAULT 0,
    classes_limit INTEGER,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    session_id TEXT,
    payment_id TEXT,
    amount BIGINT,
    currency TEXT,
    webhook_event_id TEXT,
    is_upgrade BOOLEAN NOT NULL DEFAULT FALSE,
    upgraded_from_subscription_id TEXT,
    upgraded_at TIMESTAMPTZ,
    upgraded_to_policy_id TEXT,
    upgraded_to_policy_name TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS subscriptions_session_id_uniq
    ON subscriptions (session_id) WHERE session_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS subscriptions_payment_id_uniq
    ON subscriptions (payment_id) WHERE payment_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS subscriptions_beneficiary_idx
    ON subscriptions (tenant_id, beneficiary_id);

CREATE TABLE IF NOT EXISTS provisioning_audit_log (
    entry_id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    outcome TEXT NOT NULL,
    final_state TEXT NOT NULL,
    correlation JSONB NOT NULL DEFAULT '{}'::jsonb,
    subscription_id TEXT,
    error_code TEXT,
    error_message TEXT,
    retryable BOOLEAN NOT NULL DEFAULT FALSE,
    attempts INTEGER NOT NULL DEFAULT 1,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS provisioning_audit_log_event_idx ON provisioning_audit_log (event_id);
CREATE INDEX IF NOT EXISTS provisioning_audit_log_outcome_idx
    ON provisioning_audit_log (outcome, recorded_at DESC);
"""


def apply_schema(conn: PgConnection) -> None:
    """Create the provisioning tables and indexes when missing.

    The partial unique indexes on ``session_id`` and ``payment_id`` fail to
    build while duplicate rows exist; remove them first with
    ``SubscriptionAdministration.remove_duplicates``.
    """

    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    conn.commit()
    logger.info("Provisioning schema applied")


__all__ = ["SCHEMA_SQL", "apply_schema"]
