"""Provisioning domain package turning payment events into subscriptions."""

from .errors import (
    AuditWriteError,
    AuthenticityError,
    DuplicateSubscriptionError,
    MetadataError,
    PolicyError,
    ProvisioningError,
    RetryInterrupted,
    TransientStoreError,
)
from .models import (
    AuditEntry,
    CorrelationMetadata,
    EventSource,
    PassKind,
    PassPolicy,
    PaymentEvent,
    ProcessingError,
    ProcessingOutcome,
    ProcessingResult,
    ProcessingState,
    ProvisionedSubscription,
    PurchaseType,
    ReconciliationGap,
    ReconciliationReport,
    Subscription,
    SubscriptionType,
    Transaction,
    ValidityMode,
    ValidityType,
    ValidityWindow,
)
from .admin import SubscriptionAdministration
from .catalog import InMemoryPassCatalog, PassCatalog
from .guard import IdempotencyGuard
from .processor import EventProcessor
from .reconciliation import ReconciliationSweep, TransactionSource
from .repository import AuditLog, AuditReader, SubscriptionRepository
from .retry import RetryPolicy
from .signature import StripeSignatureVerifier
from .validity import compute_window, subscription_type_for, usage_limit_for
from .writer import SubscriptionWriter

__all__ = [
    "AuditEntry",
    "AuditLog",
    "AuditReader",
    "AuditWriteError",
    "AuthenticityError",
    "CorrelationMetadata",
    "DuplicateSubscriptionError",
    "EventProcessor",
    "EventSource",
    "IdempotencyGuard",
    "InMemoryPassCatalog",
    "MetadataError",
    "PassCatalog",
    "PassKind",
    "PassPolicy",
    "PaymentEvent",
    "PolicyError",
    "ProcessingError",
    "ProcessingOutcome",
    "ProcessingResult",
    "ProcessingState",
    "ProvisionedSubscription",
    "ProvisioningError",
    "PurchaseType",
    "ReconciliationGap",
    "ReconciliationReport",
    "ReconciliationSweep",
    "RetryInterrupted",
    "RetryPolicy",
    "StripeSignatureVerifier",
    "Subscription",
    "SubscriptionAdministration",
    "SubscriptionRepository",
    "SubscriptionType",
    "SubscriptionWriter",
    "Transaction",
    "TransactionSource",
    "TransientStoreError",
    "ValidityMode",
    "ValidityType",
    "ValidityWindow",
    "compute_window",
    "subscription_type_for",
    "usage_limit_for",
]
