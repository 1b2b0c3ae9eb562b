"""Batch comparison of processor transactions against issued subscriptions."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional, Protocol

from .errors import ProvisioningError, TransientStoreError
from .guard import IdempotencyGuard
from .models import (
    BENEFICIARY_ID_KEY,
    PRODUCT_ID_KEY,
    PURCHASE_TYPE_KEY,
    TENANT_ID_KEY,
    ProcessingState,
    PurchaseType,
    ReconciliationGap,
    ReconciliationReport,
    Transaction,
)
from .processor import EventProcessor
from .repository import AuditReader
from .retry import RetryPolicy

logger = logging.getLogger("provisioning.reconciliation")

_PASS_PURCHASE_TYPES = frozenset(item.value for item in PurchaseType)


class TransactionSource(Protocol):
    """Lists completed transactions from the payment processor."""

    def list_completed_transactions(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
    ) -> Iterable[Transaction]:
        ...

    def fetch_transaction(self, tenant_id: str, session_id: str) -> Optional[Transaction]:
        ...


class ReconciliationSweep:
    """Finds paid transactions that never produced a subscription.

    With ``heal`` enabled each gap is replayed through the event processor as
    a synthetic event, so a sweep racing live webhook processing still ends
    with one subscription per transaction.
    """

    def __init__(
        self,
        *,
        source: TransactionSource,
        guard: IdempotencyGuard,
        processor: EventProcessor,
        audit_reader: Optional[AuditReader] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._source = source
        self._guard = guard
        self._processor = processor
        self._audit_reader = audit_reader
        self._retry = retry_policy or RetryPolicy()

    def run(
        self,
        tenant_id: str,
        *,
        start: datetime,
        end: datetime,
        heal: bool = False,
    ) -> ReconciliationReport:
        if start.tzinfo is None or end.tzinfo is None:
            raise ValueError("Reconciliation window bounds must be timezone-aware")
        if not start < end:
            raise ValueError("Reconciliation window start must be before its end")

        report = ReconciliationReport(tenant_id=tenant_id, window_start=start, window_end=end)
        logger.info(
            "Reconciliation sweep started tenant=%s start=%s end=%s heal=%s",
            tenant_id,
            start.isoformat(),
            end.isoformat(),
            heal,
        )

        try:
            for transaction in self._source.list_completed_transactions(tenant_id, start, end):
                self._check(transaction, report, heal=heal)
        except TransientStoreError as exc:
            report.complete = False
            report.failed += 1
            logger.error(
                "Listing transactions for tenant %s stopped after %s: %s",
                tenant_id,
                report.checked,
                exc.message,
                extra={"tenant_id": tenant_id, "error_code": exc.code},
            )

        if self._audit_reader is not None:
            report.failures = list(self._audit_reader.list_failures(tenant_id, since=start))

        logger.info(
            "Reconciliation sweep finished tenant=%s checked=%s matched=%s ignored=%s gaps=%s healed=%s failed=%s complete=%s",
            tenant_id,
            report.checked,
            report.matched,
            report.ignored,
            len(report.gaps),
            report.healed,
            report.failed,
            report.complete,
        )
        return report

    def check_session(self, tenant_id: str, session_id: str, *, heal: bool = False) -> ReconciliationReport:
        """Reconcile a single checkout session, fetched directly from the processor."""

        transaction = self._source.fetch_transaction(tenant_id, session_id)
        if transaction is None:
            raise LookupError(f"Completed checkout session {session_id} not found for tenant {tenant_id}")
        report = ReconciliationReport(
            tenant_id=tenant_id,
            window_start=transaction.completed_at,
            window_end=transaction.completed_at,
        )
        self._check(transaction, report, heal=heal)
        return report

    def _check(self, transaction: Transaction, report: ReconciliationReport, *, heal: bool) -> None:
        tenant_id = report.tenant_id
        report.checked += 1
        if not self._in_scope(transaction, tenant_id):
            report.ignored += 1
            return

        try:
            existing, _ = self._retry.run(
                lambda: self._guard.exists(transaction.session_id, transaction.payment_id),
                description="reconciliation lookup",
                context={"tenant_id": tenant_id, "session_id": transaction.session_id},
            )
        except ProvisioningError as exc:
            report.failed += 1
            logger.error(
                "Could not check session %s: %s",
                transaction.session_id,
                exc.message,
                extra={"tenant_id": tenant_id, "session_id": transaction.session_id, "error_code": exc.code},
            )
            return

        if existing is not None:
            report.matched += 1
            return

        report.gaps.append(self._gap(transaction, tenant_id))
        logger.warning(
            "Session %s has no subscription",
            transaction.session_id,
            extra={
                "tenant_id": tenant_id,
                "session_id": transaction.session_id,
                "payment_id": transaction.payment_id,
                "beneficiary_id": transaction.metadata.get(BENEFICIARY_ID_KEY),
            },
        )
        if heal:
            self._heal(transaction, report)

    def _in_scope(self, transaction: Transaction, tenant_id: str) -> bool:
        metadata = transaction.metadata
        if metadata.get(PURCHASE_TYPE_KEY) not in _PASS_PURCHASE_TYPES:
            return False
        owner = metadata.get(TENANT_ID_KEY)
        return owner is None or owner == tenant_id

    def _gap(self, transaction: Transaction, tenant_id: str) -> ReconciliationGap:
        return ReconciliationGap(
            session_id=transaction.session_id,
            payment_id=transaction.payment_id,
            tenant_id=tenant_id,
            beneficiary_id=transaction.metadata.get(BENEFICIARY_ID_KEY),
            product_id=transaction.metadata.get(PRODUCT_ID_KEY),
            amount=transaction.amount,
            currency=transaction.currency,
            completed_at=transaction.completed_at,
        )

    def _heal(self, transaction: Transaction, report: ReconciliationReport) -> None:
        try:
            result = self._processor.process(transaction.to_event())
        except ProvisioningError as exc:
            report.failed += 1
            logger.error(
                "Healing session %s was not recorded: %s",
                transaction.session_id,
                exc.message,
                extra={"tenant_id": report.tenant_id, "session_id": transaction.session_id, "error_code": exc.code},
            )
            return

        report.results.append(result)
        if result.state == ProcessingState.PROVISIONED:
            report.healed += 1
        elif result.state == ProcessingState.FAILED:
            report.failed += 1
        elif result.subscription is not None:
            report.matched += 1


__all__ = ["ReconciliationSweep", "TransactionSource"]
