"""Authenticity check for payment processor webhook deliveries."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Sequence

import stripe

from .errors import AuthenticityError

logger = logging.getLogger(__name__)


class StripeSignatureVerifier:
    """Verifies ``Stripe-Signature`` headers against one or more endpoint secrets.

    More than one secret is accepted so a single endpoint can receive both
    dashboard-configured and CLI-forwarded deliveries.
    """

    def __init__(self, secrets: Sequence[str], *, tolerance: int = 300) -> None:
        self._secrets = tuple(secret for secret in secrets if secret)
        self._tolerance = tolerance

    @property
    def configured(self) -> bool:
        return bool(self._secrets)

    def verify(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Return the decoded event body once the signature checks out."""

        if not self._secrets:
            raise AuthenticityError("No webhook signing secret is configured", code="signature_not_configured")
        if not signature_header:
            raise AuthenticityError("Missing Stripe-Signature header", code="missing_signature")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticityError("Webhook body is not valid UTF-8", code="malformed_event") from exc

        for secret in self._secrets:
            try:
                stripe.WebhookSignature.verify_header(body, signature_header, secret, self._tolerance)
            except stripe.SignatureVerificationError:
                continue
            break
        else:
            logger.warning("Rejected webhook delivery with an invalid signature")
            raise AuthenticityError("Webhook signature verification failed", code="invalid_signature")

        try:
            decoded = json.loads(body)
        except ValueError as exc:
            raise AuthenticityError("Webhook body is not valid JSON", code="malformed_event") from exc
        if not isinstance(decoded, dict):
            raise AuthenticityError("Webhook body is not a JSON object", code="malformed_event")
        return decoded


__all__ = ["StripeSignatureVerifier"]
