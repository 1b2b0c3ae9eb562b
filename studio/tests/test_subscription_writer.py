from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Barrier, Thread
from typing import List

import pytest

from studio.app.provisioning import (
    CorrelationMetadata,
    IdempotencyGuard,
    MetadataError,
    PolicyError,
    ProvisionedSubscription,
    SubscriptionType,
    SubscriptionWriter,
    TransientStoreError,
    ValidityWindow,
    compute_window,
)

NOW = datetime(2025, 1, 1, 9, tzinfo=timezone.utc)


def _writer(repository) -> SubscriptionWriter:
    return SubscriptionWriter(repository, clock=lambda: NOW)


def test_guard_matches_on_session_or_payment_id(repository, subscription_factory):
    existing = repository.seed(subscription_factory(session_id="cs_A", payment_id="pi_A"))
    guard = IdempotencyGuard(repository)

    assert guard.exists("cs_A", None) == existing
    assert guard.exists(None, "pi_A") == existing
    assert guard.exists("cs_other", "pi_A") == existing
    assert guard.exists("cs_other", "pi_other") is None


def test_guard_requires_an_identifier(repository):
    with pytest.raises(MetadataError):
        IdempotencyGuard(repository).exists(None, "")


def test_provision_denormalizes_policy(repository, policy_factory, event_factory):
    policy = policy_factory()
    event = event_factory()
    metadata = CorrelationMetadata.from_event(event)
    window = compute_window(policy, event.completed_at)

    provisioned = _writer(repository).provision(event, metadata, policy, window)

    assert provisioned.created is True
    subscription = provisioned.subscription
    assert subscription.policy_name == "10 Class Pass"
    assert subscription.subscription_type == SubscriptionType.MULTI_PASS
    assert subscription.classes_used == 0
    assert subscription.classes_limit == 10
    assert subscription.session_id == "cs_S1"
    assert subscription.payment_id == "pi_P1"
    assert subscription.webhook_event_id == "evt_1"
    assert subscription.currency == "DKK"
    assert subscription.created_at == NOW
    assert (subscription.start_date, subscription.end_date) == tuple(window)
    assert repository.create_calls == 1


def test_provision_refuses_empty_window(repository, policy_factory, event_factory):
    event = event_factory()
    window = ValidityWindow(start=event.completed_at, end=event.completed_at)

    with pytest.raises(PolicyError):
        _writer(repository).provision(event, CorrelationMetadata.from_event(event), policy_factory(), window)

    assert repository.subscriptions == {}


def test_duplicate_on_create_returns_existing_record(repository, policy_factory, event_factory, subscription_factory):
    event = event_factory(session_id="cs_S1", payment_id="pi_P1")
    existing = repository.seed(subscription_factory(session_id="cs_S1", payment_id="pi_P1"))
    policy = policy_factory()

    provisioned = _writer(repository).provision(
        event,
        CorrelationMetadata.from_event(event),
        policy,
        compute_window(policy, event.completed_at),
    )

    assert provisioned == ProvisionedSubscription(subscription=existing, created=False)
    assert len(repository.subscriptions) == 1


def test_duplicate_without_readable_record_is_transient(
    monkeypatch, repository, policy_factory, event_factory, subscription_factory
):
    event = event_factory()
    repository.seed(subscription_factory(session_id="cs_S1"))
    monkeypatch.setattr(repository, "find_by_correlation", lambda **_: None)
    policy = policy_factory()

    with pytest.raises(TransientStoreError):
        _writer(repository).provision(
            event,
            CorrelationMetadata.from_event(event),
            policy,
            compute_window(policy, event.completed_at),
        )


def test_concurrent_provisioning_creates_one_subscription(repository, policy_factory, event_factory):
    policy = policy_factory()
    event = event_factory(session_id="cs_RACE", payment_id="pi_RACE")
    metadata = CorrelationMetadata.from_event(event)
    window = compute_window(policy, event.completed_at)
    writer = _writer(repository)
    guard = IdempotencyGuard(repository)
    barrier = Barrier(2)
    results: List[ProvisionedSubscription] = []
    errors: List[BaseException] = []

    def deliver() -> None:
        try:
            assert guard.exists(metadata.session_id, metadata.payment_id) is None
            barrier.wait(timeout=5)
            results.append(writer.provision(event, metadata, policy, window))
        except BaseException as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [Thread(target=deliver) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(repository.by_session("cs_RACE")) == 1
    assert sorted(result.created for result in results) == [False, True]
    assert results[0].subscription.subscription_id == results[1].subscription.subscription_id


def test_upgrade_links_and_deactivates_previous(repository, policy_factory, event_factory, subscription_factory):
    previous = repository.seed(subscription_factory())
    policy = policy_factory(policy_id="pass-unlimited", name="Unlimited", kind="unlimited", classes_limit=None)
    event = event_factory(type="pass_upgrade", upgradeFromSubscriptionId=previous.subscription_id)
    metadata = CorrelationMetadata.from_event(event)

    provisioned = _writer(repository).upgrade(
        event,
        metadata,
        policy,
        compute_window(policy, event.completed_at),
        previous,
    )

    upgraded = provisioned.subscription
    assert upgraded.is_upgrade is True
    assert upgraded.upgraded_from_subscription_id == previous.subscription_id
    assert upgraded.is_unlimited

    old = repository.get_subscription(previous.subscription_id)
    assert old.is_active is False
    assert old.upgraded_at == NOW
    assert old.upgraded_to_policy_id == "pass-unlimited"
    assert old.upgraded_to_policy_name == "Unlimited"


def test_complete_upgrade_is_idempotent(repository, subscription_factory):
    previous = repository.seed(subscription_factory())
    upgraded = repository.seed(
        subscription_factory(
            subscription_id="sub_new",
            session_id="cs_up",
            payment_id="pi_up",
            policy_id="pass-unlimited",
            policy_name="Unlimited",
            is_upgrade=True,
            upgraded_from_subscription_id=previous.subscription_id,
        )
    )
    writer = _writer(repository)

    writer.complete_upgrade(upgraded)
    first = repository.get_subscription(previous.subscription_id)
    writer.complete_upgrade(upgraded)
    second = repository.get_subscription(previous.subscription_id)

    assert first.is_active is False
    assert second == first


def test_legacy_record_with_empty_window_still_loads(subscription_factory):
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    legacy = subscription_factory(start_date=start, end_date=start - timedelta(days=1))

    assert legacy.has_valid_window is False
