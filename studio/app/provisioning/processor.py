"""State machine turning payment events into subscriptions."""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from .catalog import PassCatalog
from .errors import (
    AuditWriteError,
    AuthenticityError,
    MetadataError,
    PolicyError,
    ProvisioningError,
    TransientStoreError,
)
from .guard import IdempotencyGuard
from .models import (
    SUPPORTED_EVENT_TYPES,
    UNSUPPORTED_PURCHASE_TYPE,
    AuditEntry,
    CorrelationMetadata,
    PaymentEvent,
    ProcessingError,
    ProcessingOutcome,
    ProcessingResult,
    ProcessingState,
    ProvisionedSubscription,
    PurchaseType,
    Subscription,
)
from .repository import AuditLog, SubscriptionRepository
from .retry import RetryPolicy
from .signature import StripeSignatureVerifier
from .validity import compute_window
from .writer import SubscriptionWriter

logger = logging.getLogger("provisioning")

UNKNOWN_EVENT_ID = "unknown"
UNKNOWN_EVENT_TYPE = "unknown"

SKIP_AWAITING_PAYMENT = "awaiting_payment"
SKIP_DUPLICATE = "duplicate"
SKIP_UNSUPPORTED_EVENT_TYPE = "unsupported_event_type"


class _Run:
    """Mutable bookkeeping for one pass through the state machine."""

    def __init__(self, event_id: str, event_type: str) -> None:
        self.event_id = event_id
        self.event_type = event_type
        self.transitions: List[ProcessingState] = [ProcessingState.RECEIVED]
        self.attempts = 1
        self.correlation: Dict[str, str] = {}
        self.started = time.monotonic()

    def enter(self, state: ProcessingState) -> None:
        self.transitions.append(state)

    def record_attempts(self, attempts: int) -> None:
        self.attempts = max(self.attempts, attempts)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class EventProcessor:
    """Drives one payment event to ``provisioned``, ``skipped`` or ``failed``.

    Every terminal outcome is written to the audit log exactly once before a
    result is returned. If the audit write cannot be made durable the
    processor raises :class:`AuditWriteError` instead of returning, so the
    delivery is not acknowledged and Stripe redelivers it.
    """

    def __init__(
        self,
        *,
        catalog: PassCatalog,
        repository: SubscriptionRepository,
        audit_log: AuditLog,
        retry_policy: Optional[RetryPolicy] = None,
        verifier: Optional[StripeSignatureVerifier] = None,
        writer: Optional[SubscriptionWriter] = None,
        guard: Optional[IdempotencyGuard] = None,
        clock: Optional[Callable] = None,
    ) -> None:
        self._catalog = catalog
        self._repository = repository
        self._audit_log = audit_log
        self._retry = retry_policy or RetryPolicy()
        self._verifier = verifier
        self._writer = writer or SubscriptionWriter(repository, clock=clock)
        self._guard = guard or IdempotencyGuard(repository)

    @property
    def guard(self) -> IdempotencyGuard:
        return self._guard

    def handle_webhook(self, payload: bytes, signature_header: Optional[str]) -> ProcessingResult:
        """Verify a raw webhook delivery and process it.

        Authenticity failures are audited and then re-raised so the caller can
        reject the delivery.
        """

        run = _Run(UNKNOWN_EVENT_ID, UNKNOWN_EVENT_TYPE)
        run.enter(ProcessingState.VERIFYING)
        body: Dict[str, object] = {}
        try:
            if self._verifier is None:
                raise AuthenticityError("No webhook signature verifier is configured", code="signature_not_configured")
            body = self._verifier.verify(payload, signature_header)
            event = PaymentEvent.from_stripe_payload(body)
        except AuthenticityError as exc:
            if isinstance(body.get("id"), str):
                run.event_id = body["id"]  # type: ignore[assignment]
            if isinstance(body.get("type"), str):
                run.event_type = body["type"]  # type: ignore[assignment]
            try:
                self._fail(run, exc)
            except AuditWriteError:
                logger.error(
                    "Rejecting event %s without an audit entry",
                    run.event_id,
                    extra={"event_id": run.event_id, "error_code": exc.code},
                )
            raise

        run.event_id = event.event_id
        run.event_type = event.event_type
        return self._drive(event, run)

    def process(self, event: PaymentEvent) -> ProcessingResult:
        """Process an event whose authenticity is already established."""

        run = _Run(event.event_id, event.event_type)
        run.enter(ProcessingState.VERIFYING)
        return self._drive(event, run)

    def _drive(self, event: PaymentEvent, run: _Run) -> ProcessingResult:
        run.correlation = event.correlation_snapshot()
        context = {"event_id": event.event_id, "session_id": event.session_id, "payment_id": event.payment_id}

        if event.event_type not in SUPPORTED_EVENT_TYPES:
            return self._skip(run, SKIP_UNSUPPORTED_EVENT_TYPE)
        if event.awaiting_payment:
            return self._skip(run, SKIP_AWAITING_PAYMENT)

        try:
            try:
                metadata = CorrelationMetadata.from_event(event)
            except MetadataError as exc:
                if exc.code == UNSUPPORTED_PURCHASE_TYPE:
                    return self._skip(run, UNSUPPORTED_PURCHASE_TYPE)
                raise
            run.enter(ProcessingState.METADATA_VALIDATED)
            context["tenant_id"] = metadata.tenant_id

            existing, attempts = self._retry.run(
                lambda: self._guard.exists(metadata.session_id, metadata.payment_id),
                description="idempotency check",
                context=context,
            )
            run.record_attempts(attempts)
            run.enter(ProcessingState.IDEMPOTENCY_CHECKED)

            if existing is not None:
                if metadata.purchase_type == PurchaseType.PASS_UPGRADE:
                    _, attempts = self._retry.run(
                        lambda: self._writer.complete_upgrade(existing),
                        description="upgrade completion",
                        context=context,
                    )
                    run.record_attempts(attempts)
                return self._skip(run, SKIP_DUPLICATE, existing)

            provisioned, attempts = self._retry.run(
                lambda: self._provision(event, metadata),
                description="subscription write",
                context=context,
            )
            run.record_attempts(attempts)
        except ProvisioningError as exc:
            return self._fail(run, exc)
        except Exception as exc:
            logger.exception(
                "Unexpected error while processing event %s",
                run.event_id,
                extra={"event_id": run.event_id, "correlation": run.correlation},
            )
            error = ProvisioningError(
                f"Unexpected {type(exc).__name__}: {exc}",
                code="internal_error",
                detail={"exception": type(exc).__name__},
            )
            return self._fail(run, error)

        if not provisioned.created:
            return self._skip(run, SKIP_DUPLICATE, provisioned.subscription)
        run.enter(ProcessingState.PROVISIONED)
        return self._finish(run, subscription=provisioned.subscription)

    def _provision(self, event: PaymentEvent, metadata: CorrelationMetadata) -> ProvisionedSubscription:
        policy = self._catalog.get_policy(metadata.product_id, metadata.tenant_id)
        if policy is None:
            raise PolicyError(
                f"Pass {metadata.product_id} does not exist for tenant {metadata.tenant_id}",
                code="unknown_policy",
                detail={"policy_id": metadata.product_id, "tenant_id": metadata.tenant_id},
            )
        window = compute_window(policy, event.completed_at)

        if metadata.purchase_type == PurchaseType.PASS_UPGRADE:
            previous = self._upgrade_source(metadata)
            return self._writer.upgrade(event, metadata, policy, window, previous)
        return self._writer.provision(event, metadata, policy, window)

    def _upgrade_source(self, metadata: CorrelationMetadata) -> Subscription:
        assert metadata.upgrade_from_subscription_id is not None
        previous = self._repository.get_subscription(metadata.upgrade_from_subscription_id)
        if previous is None:
            raise MetadataError(
                f"Subscription {metadata.upgrade_from_subscription_id} being upgraded does not exist",
                code="unknown_upgrade_source",
                detail={"subscription_id": metadata.upgrade_from_subscription_id},
            )
        if previous.beneficiary_id != metadata.beneficiary_id or previous.tenant_id != metadata.tenant_id:
            raise MetadataError(
                f"Subscription {previous.subscription_id} does not belong to the purchasing beneficiary",
                code="upgrade_source_mismatch",
                detail={"subscription_id": previous.subscription_id},
            )
        return previous

    def _skip(self, run: _Run, reason: str, subscription: Optional[Subscription] = None) -> ProcessingResult:
        run.enter(ProcessingState.SKIPPED)
        logger.info(
            "Skipped event %s (%s)",
            run.event_id,
            reason,
            extra={"event_id": run.event_id, "correlation": run.correlation},
        )
        return self._finish(run, subscription=subscription, skip_reason=reason)

    def _fail(self, run: _Run, exc: ProvisioningError) -> ProcessingResult:
        run.enter(ProcessingState.FAILED)
        run.record_attempts(int(exc.detail.get("attempts", 1)))
        logger.warning(
            "Event %s failed terminally: %s (%s)",
            run.event_id,
            exc.message,
            exc.code,
            extra={
                "event_id": run.event_id,
                "error_code": exc.code,
                "retryable": exc.retryable,
                "attempts": run.attempts,
                "correlation": run.correlation,
            },
        )
        error = ProcessingError(code=exc.code, message=exc.message, retryable=exc.retryable)
        return self._finish(run, error=error)

    def _finish(
        self,
        run: _Run,
        *,
        subscription: Optional[Subscription] = None,
        error: Optional[ProcessingError] = None,
        skip_reason: Optional[str] = None,
    ) -> ProcessingResult:
        state = run.transitions[-1]
        if state == ProcessingState.FAILED:
            outcome = ProcessingOutcome.FAILED_TERMINAL
        elif run.attempts > 1:
            outcome = ProcessingOutcome.RETRIED_THEN_SUCCEEDED
        else:
            outcome = ProcessingOutcome.SUCCEEDED

        result = ProcessingResult(
            event_id=run.event_id,
            event_type=run.event_type,
            state=state,
            outcome=outcome,
            transitions=tuple(run.transitions),
            subscription=subscription,
            error=error,
            skip_reason=skip_reason,
            attempts=run.attempts,
            duration_ms=run.elapsed_ms(),
        )
        self._audit(result, run.correlation)
        return result

    def _audit(self, result: ProcessingResult, correlation: Dict[str, str]) -> None:
        entry = AuditEntry(
            entry_id=f"aud_{uuid4().hex}",
            event_id=result.event_id,
            event_type=result.event_type,
            outcome=result.outcome,
            final_state=result.state,
            correlation=dict(correlation),
            subscription_id=result.subscription.subscription_id if result.subscription else None,
            error_code=result.error.code if result.error else None,
            error_message=result.error.message if result.error else None,
            retryable=result.error.retryable if result.error else False,
            attempts=result.attempts,
            duration_ms=result.duration_ms,
        )
        try:
            self._retry.run(
                lambda: self._audit_log.append(entry),
                description="audit write",
                context={"event_id": result.event_id},
            )
        except TransientStoreError as exc:
            logger.error(
                "Audit entry for event %s could not be written: %s",
                result.event_id,
                exc.message,
                extra={"event_id": result.event_id, "final_state": result.state.value},
            )
            raise AuditWriteError(
                f"Audit entry for event {result.event_id} could not be written",
                detail={"event_id": result.event_id, "final_state": result.state.value},
            ) from exc


__all__ = [
    "EventProcessor",
    "SKIP_AWAITING_PAYMENT",
    "SKIP_DUPLICATE",
    "SKIP_UNSUPPORTED_EVENT_TYPE",
    "UNKNOWN_EVENT_ID",
]
