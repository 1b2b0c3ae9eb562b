"""Application wiring for the provisioning engine."""
from __future__ import annotations

import logging
from functools import lru_cache
from threading import Event
from typing import Sequence

from ..provisioning import (
    AuditEntry,
    AuditLog,
    EventProcessor,
    ProcessingOutcome,
    ReconciliationSweep,
    RetryPolicy,
    StripeSignatureVerifier,
    SubscriptionAdministration,
)
from ..provisioning.catalog import PostgresPassCatalog
from ..provisioning.config import ProvisioningConfig, load_provisioning_config
from ..provisioning.repository import PostgresAuditLog, PostgresSubscriptionRepository
from .stripe_gateway import StripeTransactionSource


logger = logging.getLogger("provisioning")

SHUTDOWN_EVENT = Event()


class LoggingAuditLog(AuditLog):
    """Audit sink mirroring entries to the application logger."""

    def append(self, entry: AuditEntry) -> None:
        level = logging.WARNING if entry.outcome == ProcessingOutcome.FAILED_TERMINAL else logging.INFO
        logger.log(
            level,
            "Audit event=%s type=%s outcome=%s state=%s subscription=%s error=%s attempts=%s duration_ms=%s",
            entry.event_id,
            entry.event_type,
            entry.outcome.value,
            entry.final_state.value,
            entry.subscription_id,
            entry.error_code,
            entry.attempts,
            entry.duration_ms,
            extra={"correlation": entry.correlation},
        )


class FanOutAuditLog(AuditLog):
    """Writes every entry to each sink in order; the first failure propagates."""

    def __init__(self, sinks: Sequence[AuditLog]) -> None:
        self._sinks = tuple(sinks)

    def append(self, entry: AuditEntry) -> None:
        for sink in self._sinks:
            sink.append(entry)


def request_shutdown() -> None:
    """Interrupt pending retry waits so in-flight requests finish promptly."""

    SHUTDOWN_EVENT.set()


@lru_cache(maxsize=1)
def get_provisioning_config() -> ProvisioningConfig:
    return load_provisioning_config()


def _retry_policy(config: ProvisioningConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.max_attempts,
        backoff_seconds=config.backoff_seconds,
        shutdown_event=SHUTDOWN_EVENT,
    )


@lru_cache(maxsize=1)
def get_event_processor() -> EventProcessor:
    config = get_provisioning_config()
    repository = PostgresSubscriptionRepository()
    audit_log = FanOutAuditLog([PostgresAuditLog(), LoggingAuditLog()])
    verifier = StripeSignatureVerifier(config.webhook_secrets, tolerance=config.signature_tolerance)
    if not verifier.configured:
        logger.warning("No Stripe webhook secret configured; webhook deliveries will be rejected")
    return EventProcessor(
        catalog=PostgresPassCatalog(),
        repository=repository,
        audit_log=audit_log,
        retry_policy=_retry_policy(config),
        verifier=verifier,
    )


@lru_cache(maxsize=1)
def get_reconciliation_sweep() -> ReconciliationSweep:
    config = get_provisioning_config()
    processor = get_event_processor()
    return ReconciliationSweep(
        source=StripeTransactionSource(config),
        guard=processor.guard,
        processor=processor,
        audit_reader=PostgresAuditLog(),
        retry_policy=_retry_policy(config),
    )


@lru_cache(maxsize=1)
def get_subscription_administration() -> SubscriptionAdministration:
    return SubscriptionAdministration(PostgresSubscriptionRepository())


__all__ = [
    "FanOutAuditLog",
    "LoggingAuditLog",
    "SHUTDOWN_EVENT",
    "get_event_processor",
    "get_provisioning_config",
    "get_reconciliation_sweep",
    "get_subscription_administration",
    "request_shutdown",
]
