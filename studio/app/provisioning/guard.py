"""Idempotency guard keyed on processor correlation identifiers."""
from __future__ import annotations

import logging
from typing import Optional

from .errors import MetadataError
from .models import Subscription
from .repository import SubscriptionRepository

logger = logging.getLogger("provisioning")


class IdempotencyGuard:
    """Answers whether a transaction already produced a subscription.

    The session id and payment id are checked together in a single lookup,
    because the two may arrive on separate events for the same purchase.
    """

    def __init__(self, repository: SubscriptionRepository) -> None:
        self._repository = repository

    def exists(self, session_id: Optional[str], payment_id: Optional[str]) -> Optional[Subscription]:
        if not session_id and not payment_id:
            raise MetadataError(
                "Idempotency check needs a session id or a payment id",
                code="missing_metadata",
                detail={"missing": ["sessionId|paymentId"]},
            )
        existing = self._repository.find_by_correlation(
            session_id=session_id or None,
            payment_id=payment_id or None,
        )
        if existing is not None:
            logger.debug(
                "Correlation ids already provisioned as %s",
                existing.subscription_id,
                extra={"session_id": session_id, "payment_id": payment_id},
            )
        return existing


__all__ = ["IdempotencyGuard"]
