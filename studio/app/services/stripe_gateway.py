"""Stripe-backed transaction listing for reconciliation."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterator, Mapping, Optional

import stripe

from ..provisioning.config import ProvisioningConfig
from ..provisioning.errors import TransientStoreError
from ..provisioning.models import PAID_PAYMENT_STATUSES, Transaction

logger = logging.getLogger(__name__)


def _stripe_id(value: object) -> Optional[str]:
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def _to_transaction(session: Mapping[str, object]) -> Transaction:
    metadata = session.get("metadata") or {}
    return Transaction(
        session_id=str(session["id"]),
        payment_id=_stripe_id(session.get("payment_intent")),
        amount=session.get("amount_total"),
        currency=session.get("currency"),
        completed_at=datetime.fromtimestamp(int(session["created"]), tz=timezone.utc),
        metadata={str(key): str(value) for key, value in dict(metadata).items() if value is not None},
    )


class StripeTransactionSource:
    """Lists completed checkout sessions using the tenant's Stripe credential."""

    def __init__(self, config: ProvisioningConfig, *, page_size: int = 100) -> None:
        self._config = config
        self._page_size = page_size

    def list_completed_transactions(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
    ) -> Iterator[Transaction]:
        api_key = self._config.credential_for(tenant_id)
        try:
            sessions = stripe.checkout.Session.list(
                created={"gte": int(start.timestamp()), "lt": int(end.timestamp())},
                status="complete",
                limit=self._page_size,
                api_key=api_key,
            )
            for session in sessions.auto_paging_iter():
                if session.get("payment_status") not in PAID_PAYMENT_STATUSES:
                    continue
                yield _to_transaction(session)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise TransientStoreError(f"Stripe unavailable while listing sessions: {exc}") from exc

    def fetch_transaction(self, tenant_id: str, session_id: str) -> Optional[Transaction]:
        api_key = self._config.credential_for(tenant_id)
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=api_key)
        except stripe.InvalidRequestError:
            logger.info("Checkout session %s not found for tenant %s", session_id, tenant_id)
            return None
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise TransientStoreError(f"Stripe unavailable while fetching session {session_id}: {exc}") from exc
        if session.get("status") != "complete" or session.get("payment_status") not in PAID_PAYMENT_STATUSES:
            return None
        return _to_transaction(session)


__all__ = ["StripeTransactionSource"]
