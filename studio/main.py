import logging
import math
import os

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI

from studio import app_context
from studio.app.provisioning.schema import apply_schema

load_dotenv()

logger = logging.getLogger("provisioning")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "studio_db"),
    user=os.getenv("DB_USER", "studio_user"),
    password=os.getenv("DB_PASSWORD", "studio_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

# Catalog reads only; idempotency lookups always use the primary.
DB_REPLICA_HOST = os.getenv("DB_REPLICA_HOST") or None

APPLY_SCHEMA_ON_STARTUP = os.getenv("DB_APPLY_SCHEMA", "false").strip().lower() in {"1", "true", "yes", "on"}


def get_conn():
    return psycopg2.connect(**DB_CFG)


def get_replica_conn():
    if DB_REPLICA_HOST is None:
        return get_conn()
    return psycopg2.connect(**{**DB_CFG, "host": DB_REPLICA_HOST})


app_context.configure(get_conn=get_conn, get_replica_conn=get_replica_conn)

from studio.app.routes.provisioning import admin_router as provisioning_admin_router
from studio.app.routes.provisioning import router as provisioning_router
from studio.app.services.provisioning import request_shutdown

app = FastAPI(title="Studio Passes API")

app.include_router(provisioning_router)
app.include_router(provisioning_admin_router)


@app.on_event("startup")
def _apply_schema() -> None:
    if not APPLY_SCHEMA_ON_STARTUP:
        return
    conn = get_conn()
    try:
        apply_schema(conn)
    finally:
        conn.close()


@app.on_event("shutdown")
def _interrupt_provisioning_retries() -> None:
    logger.info("Shutdown requested; interrupting pending provisioning retries")
    request_shutdown()


@app.get("/api/healthz")
def healthz():
    return {"ok": True}
