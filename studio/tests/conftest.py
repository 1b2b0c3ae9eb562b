from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import pytest

from studio.app.provisioning import (
    AuditEntry,
    DuplicateSubscriptionError,
    EventProcessor,
    InMemoryPassCatalog,
    PassKind,
    PassPolicy,
    PaymentEvent,
    ProcessingOutcome,
    RetryPolicy,
    Subscription,
    Transaction,
    TransientStoreError,
    ValidityType,
)
from studio.app.provisioning.models import CHECKOUT_COMPLETED

TENANT_ID = "studio-1"


class InMemorySubscriptionRepository:
    """Subscription store enforcing the same uniqueness rules as the database."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Subscription] = {}
        self.create_calls = 0
        self.find_failures = 0
        self.create_failures = 0
        self.before_create: Optional[Callable[[Subscription], None]] = None
        self._lock = Lock()

    def seed(self, subscription: Subscription) -> Subscription:
        self.subscriptions[subscription.subscription_id] = subscription
        return subscription

    def _matches(self, record: Subscription, session_id: Optional[str], payment_id: Optional[str]) -> bool:
        return bool(
            (session_id and record.session_id == session_id)
            or (payment_id and record.payment_id == payment_id)
        )

    def find_by_correlation(self, *, session_id: Optional[str], payment_id: Optional[str]) -> Optional[Subscription]:
        if self.find_failures:
            self.find_failures -= 1
            raise TransientStoreError("store timed out")
        matches = self.list_by_correlation(session_id=session_id, payment_id=payment_id)
        return matches[0] if matches else None

    def create_subscription(self, subscription: Subscription) -> Subscription:
        self.create_calls += 1
        if self.create_failures:
            self.create_failures -= 1
            raise TransientStoreError("store unavailable")
        if self.before_create is not None:
            self.before_create(subscription)
        with self._lock:
            for record in self.subscriptions.values():
                if self._matches(record, subscription.session_id, subscription.payment_id):
                    raise DuplicateSubscriptionError(
                        "duplicate",
                        session_id=subscription.session_id,
                        payment_id=subscription.payment_id,
                    )
            self.subscriptions[subscription.subscription_id] = subscription
        return subscription

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(subscription_id)

    def deactivate_subscription(
        self,
        subscription_id: str,
        *,
        upgraded_at: datetime,
        upgraded_to_policy_id: str,
        upgraded_to_policy_name: str,
    ) -> Optional[Subscription]:
        record = self.subscriptions.get(subscription_id)
        if record is None:
            return None
        updated = record.model_copy(
            update={
                "is_active": False,
                "upgraded_at": record.upgraded_at or upgraded_at,
                "upgraded_to_policy_id": upgraded_to_policy_id,
                "upgraded_to_policy_name": upgraded_to_policy_name,
            }
        )
        self.subscriptions[subscription_id] = updated
        return updated

    def update_end_date(self, subscription_id: str, end_date: datetime) -> Optional[Subscription]:
        record = self.subscriptions.get(subscription_id)
        if record is None:
            return None
        updated = record.model_copy(update={"end_date": end_date})
        self.subscriptions[subscription_id] = updated
        return updated

    def list_by_correlation(self, *, session_id: Optional[str], payment_id: Optional[str]) -> List[Subscription]:
        return sorted(
            (record for record in self.subscriptions.values() if self._matches(record, session_id, payment_id)),
            key=lambda record: (record.created_at, record.subscription_id),
        )

    def delete_subscription(self, subscription_id: str) -> bool:
        return self.subscriptions.pop(subscription_id, None) is not None

    def by_session(self, session_id: str) -> List[Subscription]:
        return [record for record in self.subscriptions.values() if record.session_id == session_id]


class RecordingAuditLog:
    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []
        self.failures = 0

    def append(self, entry: AuditEntry) -> None:
        if self.failures:
            self.failures -= 1
            raise TransientStoreError("audit store unavailable")
        self.entries.append(entry)

    def list_failures(self, tenant_id: str, *, since: Optional[datetime] = None, limit: int = 100) -> Sequence[AuditEntry]:
        return [
            entry
            for entry in self.entries
            if entry.outcome == ProcessingOutcome.FAILED_TERMINAL
            and entry.correlation.get("tenantId") == tenant_id
            and (since is None or entry.recorded_at >= since)
        ][:limit]


class FakeTransactionSource:
    def __init__(self, transactions: Iterable[Transaction] = ()) -> None:
        self.transactions: List[Transaction] = list(transactions)

    def list_completed_transactions(self, tenant_id: str, start: datetime, end: datetime) -> List[Transaction]:
        return [tx for tx in self.transactions if start <= tx.completed_at < end]

    def fetch_transaction(self, tenant_id: str, session_id: str) -> Optional[Transaction]:
        for tx in self.transactions:
            if tx.session_id == session_id:
                return tx
        return None


def make_policy(**overrides) -> PassPolicy:
    values = dict(
        policy_id="pass-10",
        tenant_id=TENANT_ID,
        name="10 Class Pass",
        kind=PassKind.MULTI_PASS,
        price=150,
        validity_type=ValidityType.ROLLING_DAYS,
        validity_days=90,
        classes_limit=10,
    )
    values.update(overrides)
    return PassPolicy(**values)


def make_event(
    *,
    event_id: str = "evt_1",
    session_id: Optional[str] = "cs_S1",
    payment_id: Optional[str] = "pi_P1",
    completed_at: datetime = datetime(2025, 1, 1, tzinfo=timezone.utc),
    event_type: str = CHECKOUT_COMPLETED,
    payment_status: Optional[str] = None,
    **metadata: Optional[str],
) -> PaymentEvent:
    values = {
        "passId": "pass-10",
        "userId": "user-1",
        "tenantId": TENANT_ID,
        "type": "pass_purchase",
    }
    values.update(metadata)
    return PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        session_id=session_id,
        payment_id=payment_id,
        amount=15000,
        currency="dkk",
        payment_status=payment_status,
        completed_at=completed_at,
        metadata={key: value for key, value in values.items() if value is not None},
    )


def make_subscription(**overrides) -> Subscription:
    start = datetime(2024, 12, 1, tzinfo=timezone.utc)
    values = dict(
        subscription_id="sub_existing",
        beneficiary_id="user-1",
        tenant_id=TENANT_ID,
        policy_id="pass-10",
        policy_name="10 Class Pass",
        policy_kind=PassKind.MULTI_PASS,
        subscription_type="multi-pass",
        start_date=start,
        end_date=start + timedelta(days=90),
        classes_limit=10,
        session_id="cs_existing",
        payment_id="pi_existing",
        created_at=start,
        updated_at=start,
    )
    values.update(overrides)
    return Subscription(**values)


@pytest.fixture
def repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def audit_log() -> RecordingAuditLog:
    return RecordingAuditLog()


@pytest.fixture
def catalog() -> InMemoryPassCatalog:
    return InMemoryPassCatalog(
        make_policy(),
        make_policy(
            policy_id="pass-fixed",
            name="Spring Term",
            validity_type=ValidityType.FIXED_DATE,
            validity_days=None,
            expiry_date=datetime(2025, 6, 30, tzinfo=timezone.utc),
        ),
        make_policy(
            policy_id="pass-expired",
            name="Autumn Term",
            validity_type=ValidityType.FIXED_DATE,
            validity_days=None,
            expiry_date=datetime(2025, 1, 1, tzinfo=timezone.utc),
        ),
        make_policy(
            policy_id="pass-unlimited",
            name="Unlimited Monthly",
            kind=PassKind.UNLIMITED,
            validity_days=30,
            classes_limit=None,
        ),
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_seconds=0)


@pytest.fixture
def processor(catalog, repository, audit_log, retry_policy) -> EventProcessor:
    return EventProcessor(
        catalog=catalog,
        repository=repository,
        audit_log=audit_log,
        retry_policy=retry_policy,
    )


@pytest.fixture
def transaction_source() -> FakeTransactionSource:
    return FakeTransactionSource()


@pytest.fixture
def event_factory() -> Callable[..., PaymentEvent]:
    return make_event


@pytest.fixture
def policy_factory() -> Callable[..., PassPolicy]:
    return make_policy


@pytest.fixture
def subscription_factory() -> Callable[..., Subscription]:
    return make_subscription
