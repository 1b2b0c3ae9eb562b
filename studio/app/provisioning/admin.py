"""Operator corrections for subscription records."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from .errors import MetadataError, PolicyError
from .models import Subscription, _as_utc
from .repository import SubscriptionRepository

logger = logging.getLogger("provisioning")


class SubscriptionAdministration:
    """Manual repairs that sit outside the event-driven write path."""

    def __init__(self, repository: SubscriptionRepository) -> None:
        self._repository = repository

    def correct_expiry(self, subscription_id: str, new_end_date: datetime, *, reason: str) -> Subscription:
        """Move the end of a subscription's validity window.

        This is the only supported way to change ``end_date`` after creation.
        """

        if not reason or not reason.strip():
            raise ValueError("A reason is required for expiry corrections")
        if new_end_date.tzinfo is None:
            raise ValueError("new_end_date must be timezone-aware")
        subscription = self._repository.get_subscription(subscription_id)
        if subscription is None:
            raise LookupError(f"Subscription {subscription_id} not found")

        new_end_date = _as_utc(new_end_date)
        if not subscription.start_date < new_end_date:
            raise PolicyError(
                f"Expiry {new_end_date.isoformat()} is not after start {subscription.start_date.isoformat()}",
                code="invalid_window",
                detail={"subscription_id": subscription_id},
            )

        updated = self._repository.update_end_date(subscription_id, new_end_date)
        if updated is None:
            raise LookupError(f"Subscription {subscription_id} not found")
        logger.warning(
            "Corrected expiry of subscription %s from %s to %s: %s",
            subscription_id,
            subscription.end_date.isoformat(),
            new_end_date.isoformat(),
            reason.strip(),
            extra={"tenant_id": subscription.tenant_id, "subscription_id": subscription_id},
        )
        return updated

    def find_duplicates(
        self,
        session_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> List[Subscription]:
        """Records sharing a correlation id, oldest first. Empty when there is at most one."""

        if not session_id and not payment_id:
            raise MetadataError("A session id or payment id is required", code="missing_metadata")
        records = sorted(
            self._repository.list_by_correlation(session_id=session_id, payment_id=payment_id),
            key=lambda item: (item.created_at, item.subscription_id),
        )
        return records if len(records) > 1 else []

    def remove_duplicates(
        self,
        session_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> List[str]:
        """Delete every duplicate except the oldest record and return the removed ids."""

        duplicates = self.find_duplicates(session_id=session_id, payment_id=payment_id)
        if not duplicates:
            return []
        keeper, extras = duplicates[0], duplicates[1:]
        removed: List[str] = []
        for record in extras:
            if self._repository.delete_subscription(record.subscription_id):
                removed.append(record.subscription_id)
        logger.warning(
            "Removed %s duplicate subscriptions, kept %s",
            len(removed),
            keeper.subscription_id,
            extra={"session_id": session_id, "payment_id": payment_id, "removed": removed},
        )
        return removed


__all__ = ["SubscriptionAdministration"]
