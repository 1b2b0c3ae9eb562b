"""Error taxonomy for subscription provisioning."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


class ProvisioningError(Exception):
    """Base class for failures raised while provisioning a subscription."""

    code = "provisioning_error"
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.detail: Dict[str, Any] = dict(detail or {})


class AuthenticityError(ProvisioningError):
    """Forged, unsigned or malformed event. Never retried."""

    code = "authenticity_error"


class MetadataError(ProvisioningError):
    """Missing or invalid correlation metadata. Never retried."""

    code = "metadata_error"


class PolicyError(ProvisioningError):
    """Unknown pass, or a pass configuration that yields no valid window."""

    code = "policy_error"


class TransientStoreError(ProvisioningError):
    """Temporary store or network unavailability; safe to retry."""

    code = "transient_store_error"
    retryable = True


class RetryInterrupted(TransientStoreError):
    """A retry wait was cut short by a shutdown request."""

    code = "retry_interrupted"


class DuplicateSubscriptionError(ProvisioningError):
    """The store rejected a create because the correlation ids already exist."""

    code = "duplicate_subscription"

    def __init__(self, message: str, *, session_id: Optional[str] = None, payment_id: Optional[str] = None) -> None:
        super().__init__(message, detail={"session_id": session_id, "payment_id": payment_id})
        self.session_id = session_id
        self.payment_id = payment_id


class AuditWriteError(ProvisioningError):
    """The audit trail could not be written, so the event must not be acknowledged."""

    code = "audit_write_error"
    retryable = True


__all__ = [
    "AuditWriteError",
    "AuthenticityError",
    "DuplicateSubscriptionError",
    "MetadataError",
    "PolicyError",
    "ProvisioningError",
    "RetryInterrupted",
    "TransientStoreError",
]
