"""Creation of subscription records from verified payment events."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from .errors import DuplicateSubscriptionError, PolicyError, TransientStoreError
from .models import (
    CorrelationMetadata,
    PassPolicy,
    PaymentEvent,
    ProvisionedSubscription,
    Subscription,
    ValidityWindow,
)
from .repository import SubscriptionRepository
from .validity import subscription_type_for, usage_limit_for

logger = logging.getLogger("provisioning")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionWriter:
    """Persists exactly one subscription per transaction.

    The store's uniqueness constraint on the correlation ids is the final
    arbiter when two deliveries of the same event race past the idempotency
    guard. The loser re-reads and returns the winner's record.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or _utcnow

    def provision(
        self,
        event: PaymentEvent,
        metadata: CorrelationMetadata,
        policy: PassPolicy,
        window: ValidityWindow,
    ) -> ProvisionedSubscription:
        record = self._build(event, metadata, policy, window)
        return self._create(record)

    def upgrade(
        self,
        event: PaymentEvent,
        metadata: CorrelationMetadata,
        policy: PassPolicy,
        window: ValidityWindow,
        previous: Subscription,
    ) -> ProvisionedSubscription:
        record = self._build(event, metadata, policy, window).model_copy(
            update={
                "is_upgrade": True,
                "upgraded_from_subscription_id": previous.subscription_id,
            }
        )
        provisioned = self._create(record)
        self._deactivate(previous, provisioned.subscription)
        return provisioned

    def complete_upgrade(self, existing: Subscription) -> None:
        """Finish an upgrade whose new subscription was written on an earlier delivery."""

        if not existing.is_upgrade or not existing.upgraded_from_subscription_id:
            return
        previous = self._repository.get_subscription(existing.upgraded_from_subscription_id)
        if previous is None:
            logger.warning(
                "Upgraded subscription %s points at missing subscription %s",
                existing.subscription_id,
                existing.upgraded_from_subscription_id,
            )
            return
        self._deactivate(previous, existing)

    def _build(
        self,
        event: PaymentEvent,
        metadata: CorrelationMetadata,
        policy: PassPolicy,
        window: ValidityWindow,
    ) -> Subscription:
        if not window.start < window.end:
            raise PolicyError(
                f"Refusing to write an empty validity window for pass {policy.policy_id}",
                code="invalid_window",
                detail={"start": window.start.isoformat(), "end": window.end.isoformat()},
            )
        now = self._clock()
        return Subscription(
            subscription_id=f"sub_{uuid4().hex}",
            beneficiary_id=metadata.beneficiary_id,
            tenant_id=metadata.tenant_id,
            policy_id=policy.policy_id,
            policy_name=policy.name,
            policy_kind=policy.kind,
            subscription_type=subscription_type_for(policy.kind),
            start_date=window.start,
            end_date=window.end,
            classes_used=0,
            classes_limit=usage_limit_for(policy),
            is_active=True,
            session_id=metadata.session_id,
            payment_id=metadata.payment_id,
            amount=event.amount,
            currency=event.currency,
            webhook_event_id=event.event_id,
            created_at=now,
            updated_at=now,
        )

    def _create(self, record: Subscription) -> ProvisionedSubscription:
        try:
            created = self._repository.create_subscription(record)
        except DuplicateSubscriptionError:
            existing = self._repository.find_by_correlation(
                session_id=record.session_id,
                payment_id=record.payment_id,
            )
            if existing is None:
                raise TransientStoreError(
                    "Store reported a duplicate subscription but the record is not readable yet",
                    detail={"session_id": record.session_id, "payment_id": record.payment_id},
                )
            logger.info(
                "Concurrent delivery already created subscription %s",
                existing.subscription_id,
                extra={"session_id": record.session_id, "payment_id": record.payment_id},
            )
            return ProvisionedSubscription(subscription=existing, created=False)

        logger.info(
            "Created subscription %s for beneficiary %s pass %s",
            created.subscription_id,
            created.beneficiary_id,
            created.policy_id,
            extra={
                "tenant_id": created.tenant_id,
                "session_id": created.session_id,
                "payment_id": created.payment_id,
            },
        )
        return ProvisionedSubscription(subscription=created, created=True)

    def _deactivate(self, previous: Subscription, replacement: Subscription) -> None:
        if not previous.is_active and previous.upgraded_to_policy_id == replacement.policy_id:
            return
        self._repository.deactivate_subscription(
            previous.subscription_id,
            upgraded_at=self._clock(),
            upgraded_to_policy_id=replacement.policy_id,
            upgraded_to_policy_name=replacement.policy_name,
        )
        logger.info(
            "Deactivated subscription %s after upgrade to %s",
            previous.subscription_id,
            replacement.subscription_id,
            extra={"tenant_id": previous.tenant_id},
        )


__all__ = ["SubscriptionWriter"]
