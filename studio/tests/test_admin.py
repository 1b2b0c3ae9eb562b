from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from studio.app.provisioning import (
    MetadataError,
    PolicyError,
    ReconciliationSweep,
    SubscriptionAdministration,
    Transaction,
)
from studio.app.provisioning.config import load_provisioning_config
from studio.app.routes import provisioning as provisioning_routes
from studio.app.services import provisioning as provisioning_service


def test_correct_expiry_moves_end_date(repository, subscription_factory):
    subscription = repository.seed(subscription_factory())
    new_end = subscription.start_date + timedelta(days=120)

    updated = SubscriptionAdministration(repository).correct_expiry(
        subscription.subscription_id,
        new_end,
        reason="Studio closed for renovation",
    )

    assert updated.end_date == new_end
    assert repository.get_subscription(subscription.subscription_id).end_date == new_end


def test_correct_expiry_refuses_window_ending_at_start(repository, subscription_factory):
    subscription = repository.seed(subscription_factory())

    with pytest.raises(PolicyError):
        SubscriptionAdministration(repository).correct_expiry(
            subscription.subscription_id,
            subscription.start_date,
            reason="typo",
        )

    assert repository.get_subscription(subscription.subscription_id).end_date == subscription.end_date


def test_correct_expiry_requires_reason(repository, subscription_factory):
    subscription = repository.seed(subscription_factory())

    with pytest.raises(ValueError):
        SubscriptionAdministration(repository).correct_expiry(
            subscription.subscription_id,
            subscription.end_date + timedelta(days=1),
            reason=" ",
        )


def test_correct_expiry_unknown_subscription(repository):
    with pytest.raises(LookupError):
        SubscriptionAdministration(repository).correct_expiry(
            "sub_missing",
            datetime(2030, 1, 1, tzinfo=timezone.utc),
            reason="extension",
        )


def test_remove_duplicates_keeps_oldest(repository, subscription_factory):
    base = datetime(2024, 6, 1, tzinfo=timezone.utc)
    for index in range(3):
        repository.seed(
            subscription_factory(
                subscription_id=f"sub_{index}",
                session_id="cs_dup",
                payment_id=f"pi_{index}",
                created_at=base + timedelta(minutes=index),
            )
        )
    admin = SubscriptionAdministration(repository)

    assert [record.subscription_id for record in admin.find_duplicates(session_id="cs_dup")] == [
        "sub_0",
        "sub_1",
        "sub_2",
    ]
    removed = admin.remove_duplicates(session_id="cs_dup")

    assert sorted(removed) == ["sub_1", "sub_2"]
    assert list(repository.subscriptions) == ["sub_0"]


def test_single_record_is_not_a_duplicate(repository, subscription_factory):
    repository.seed(subscription_factory(session_id="cs_one"))

    admin = SubscriptionAdministration(repository)

    assert admin.find_duplicates(session_id="cs_one") == []
    assert admin.remove_duplicates(session_id="cs_one") == []


def test_find_duplicates_requires_an_identifier(repository):
    with pytest.raises(MetadataError):
        SubscriptionAdministration(repository).find_duplicates()


@pytest.fixture
def admin_client(monkeypatch, repository, sweep_factory):
    config = load_provisioning_config({"ADMIN_API_TOKEN": "s3cret"})
    monkeypatch.setattr(provisioning_service, "get_provisioning_config", lambda: config)
    monkeypatch.setattr(
        provisioning_service,
        "get_subscription_administration",
        lambda: SubscriptionAdministration(repository),
    )
    monkeypatch.setattr(provisioning_service, "get_reconciliation_sweep", sweep_factory)
    app = FastAPI()
    app.include_router(provisioning_routes.admin_router)
    return TestClient(app)


@pytest.fixture
def sweep_factory(transaction_source, processor, audit_log, retry_policy):
    def build():
        return ReconciliationSweep(
            source=transaction_source,
            guard=processor.guard,
            processor=processor,
            audit_reader=audit_log,
            retry_policy=retry_policy,
        )

    return build


def test_admin_routes_require_token(admin_client):
    response = admin_client.post("/api/admin/reconciliation", json={"tenantId": "studio-1"})

    assert response.status_code == 401


def test_admin_routes_disabled_without_configured_token(monkeypatch, admin_client):
    config = load_provisioning_config({})
    monkeypatch.setattr(provisioning_service, "get_provisioning_config", lambda: config)

    response = admin_client.post(
        "/api/admin/reconciliation",
        json={"tenantId": "studio-1"},
        headers={"X-Admin-Token": "anything"},
    )

    assert response.status_code == 503


def test_reconciliation_route_returns_report(admin_client, transaction_source):
    transaction_source.transactions = [
        Transaction(
            session_id="cs_route",
            payment_id="pi_route",
            completed_at=datetime(2025, 1, 10, tzinfo=timezone.utc),
            metadata={"passId": "pass-10", "userId": "user-1", "tenantId": "studio-1", "type": "pass_purchase"},
        )
    ]

    response = admin_client.post(
        "/api/admin/reconciliation",
        json={
            "tenantId": "studio-1",
            "since": "2025-01-01T00:00:00Z",
            "until": "2025-02-01T00:00:00Z",
            "heal": True,
        },
        headers={"X-Admin-Token": "s3cret"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["checked"] == 1
    assert body["healed"] == 1
    assert body["gaps"][0]["session_id"] == "cs_route"


def test_expiry_route_rejects_invalid_window(admin_client, repository, subscription_factory):
    subscription = repository.seed(subscription_factory())

    response = admin_client.post(
        f"/api/admin/subscriptions/{subscription.subscription_id}/expiry",
        json={"endDate": "2000-01-01T00:00:00Z", "reason": "typo"},
        headers={"X-Admin-Token": "s3cret"},
    )

    assert response.status_code == 400


def test_expiry_route_unknown_subscription(admin_client):
    response = admin_client.post(
        "/api/admin/subscriptions/sub_missing/expiry",
        json={"endDate": "2030-01-01T00:00:00Z", "reason": "extension"},
        headers={"X-Admin-Token": "s3cret"},
    )

    assert response.status_code == 404
