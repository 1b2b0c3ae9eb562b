"""Domain models for pass provisioning."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import AuthenticityError, MetadataError, PolicyError

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
SUPPORTED_EVENT_TYPES = frozenset({CHECKOUT_COMPLETED, CHECKOUT_ASYNC_PAYMENT_SUCCEEDED})

# Checkout session payment_status values that settle the purchase.
PAID_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})

PRODUCT_ID_KEY = "passId"
BENEFICIARY_ID_KEY = "userId"
TENANT_ID_KEY = "tenantId"
PURCHASE_TYPE_KEY = "type"
UPGRADE_FROM_KEY = "upgradeFromSubscriptionId"

UNSUPPORTED_PURCHASE_TYPE = "unsupported_purchase_type"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PassKind(str, Enum):
    """Purchasable pass products offered by a studio."""

    SINGLE = "single"
    MULTI_PASS = "multi-pass"
    CLIPCARD = "multi"
    UNLIMITED = "unlimited"


class SubscriptionType(str, Enum):
    """Kind of access recorded on an issued subscription."""

    SINGLE = "single"
    MULTI_PASS = "multi-pass"
    CLIPCARD = "clipcard"
    MONTHLY = "monthly"


class ValidityType(str, Enum):
    """Validity rule declared on a pass by the studio administrator."""

    FIXED_DATE = "date"
    ROLLING_DAYS = "days"


class ValidityMode(str, Enum):
    """Resolved validity rule used by the window calculation."""

    FIXED_DATE = "fixed_date"
    ROLLING_DAYS = "rolling_days"


class PurchaseType(str, Enum):
    """Event-type discriminator carried in the checkout metadata."""

    PASS_PURCHASE = "pass_purchase"
    PASS_UPGRADE = "pass_upgrade"


class EventSource(str, Enum):
    """Where a payment event entered the system."""

    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"


class ProcessingState(str, Enum):
    """States of the provisioning state machine."""

    RECEIVED = "received"
    VERIFYING = "verifying"
    METADATA_VALIDATED = "metadata_validated"
    IDEMPOTENCY_CHECKED = "idempotency_checked"
    PROVISIONED = "provisioned"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {ProcessingState.PROVISIONED, ProcessingState.SKIPPED, ProcessingState.FAILED}


class ProcessingOutcome(str, Enum):
    """Outcome recorded in the audit trail."""

    SUCCEEDED = "succeeded"
    RETRIED_THEN_SUCCEEDED = "retried_then_succeeded"
    FAILED_TERMINAL = "failed_terminal"


class PassPolicy(BaseModel):
    """Catalog entry describing a pass and how long it stays valid."""

    policy_id: str
    tenant_id: str
    name: str
    kind: PassKind
    price: float = Field(default=0, ge=0)
    validity_type: Optional[ValidityType] = None
    expiry_date: Optional[datetime] = None
    validity_days: Optional[int] = None
    classes_limit: Optional[int] = None
    is_active: bool = True

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("expiry_date")
    @classmethod
    def _aware_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value) if value is not None else None

    def validity_mode(self) -> ValidityMode:
        """Return the single validity rule this pass declares.

        Passes created before ``validity_type`` existed carry only
        ``validity_days``, so an unset type is resolved from whichever value
        is present. Declaring neither, or both without a type, is a
        configuration defect and raises :class:`PolicyError`.
        """

        has_expiry = self.expiry_date is not None
        has_days = self.validity_days is not None and self.validity_days > 0

        if self.validity_type == ValidityType.FIXED_DATE:
            if has_expiry:
                return ValidityMode.FIXED_DATE
            raise PolicyError(
                f"Pass {self.policy_id} declares a fixed expiry but has no expiry date",
                code="missing_validity",
            )
        if self.validity_type == ValidityType.ROLLING_DAYS:
            if has_days:
                return ValidityMode.ROLLING_DAYS
            raise PolicyError(
                f"Pass {self.policy_id} declares rolling validity but has no positive day count",
                code="missing_validity",
            )

        if has_expiry and not has_days:
            return ValidityMode.FIXED_DATE
        if has_days and not has_expiry:
            return ValidityMode.ROLLING_DAYS
        if has_days and has_expiry:
            raise PolicyError(
                f"Pass {self.policy_id} declares both an expiry date and a day count",
                code="ambiguous_validity",
            )
        raise PolicyError(
            f"Pass {self.policy_id} has no expiry date and no validity days",
            code="missing_validity",
        )


class ValidityWindow(NamedTuple):
    start: datetime
    end: datetime


class PaymentEvent(BaseModel):
    """Payment-completion notification observed from the payment processor."""

    event_id: str
    event_type: str
    session_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    completed_at: datetime
    metadata: Dict[str, str] = Field(default_factory=dict)
    source: EventSource = EventSource.WEBHOOK

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("completed_at")
    @classmethod
    def _utc_completed_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else None

    @classmethod
    def from_stripe_payload(cls, payload: Mapping[str, object]) -> "PaymentEvent":
        """Build an event from a decoded Stripe event body.

        Raises :class:`AuthenticityError` when the body does not have the
        shape of a Stripe event.
        """

        event_id = payload.get("id")
        event_type = payload.get("type")
        data = payload.get("data")
        if not isinstance(event_id, str) or not event_id:
            raise AuthenticityError("Event payload has no id", code="malformed_event")
        if not isinstance(event_type, str) or not event_type:
            raise AuthenticityError("Event payload has no type", code="malformed_event", detail={"event_id": event_id})
        if not isinstance(data, Mapping) or not isinstance(data.get("object"), Mapping):
            raise AuthenticityError("Event payload has no data object", code="malformed_event", detail={"event_id": event_id})

        obj: Mapping[str, object] = data["object"]  # type: ignore[assignment]
        completed_epoch = payload.get("created", obj.get("created"))
        if not isinstance(completed_epoch, (int, float)):
            raise AuthenticityError("Event payload has no creation time", code="malformed_event", detail={"event_id": event_id})

        is_session = obj.get("object") in (None, "checkout.session")
        return cls(
            event_id=event_id,
            event_type=event_type,
            session_id=_optional_str(obj.get("id")) if is_session else None,
            payment_id=_stripe_id(obj.get("payment_intent")),
            amount=_optional_int(obj.get("amount_total", obj.get("amount"))),
            currency=_optional_str(obj.get("currency")),
            payment_status=_optional_str(obj.get("payment_status")),
            completed_at=datetime.fromtimestamp(completed_epoch, tz=timezone.utc),
            metadata=_safe_metadata(obj.get("metadata")),
        )

    def correlation_snapshot(self) -> Dict[str, str]:
        snapshot = {key: value for key, value in self.metadata.items() if value}
        if self.session_id:
            snapshot["sessionId"] = self.session_id
        if self.payment_id:
            snapshot["paymentId"] = self.payment_id
        return snapshot

    @property
    def awaiting_payment(self) -> bool:
        """True for completed checkouts whose delayed payment has not settled yet."""

        return self.payment_status is not None and self.payment_status not in PAID_PAYMENT_STATUSES


class CorrelationMetadata(BaseModel):
    """Validated correlation fields extracted from a payment event."""

    product_id: str
    beneficiary_id: str
    tenant_id: str
    purchase_type: PurchaseType
    session_id: Optional[str] = None
    payment_id: Optional[str] = None
    upgrade_from_subscription_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def from_event(cls, event: PaymentEvent) -> "CorrelationMetadata":
        """Extract the correlation fields, refusing to substitute defaults."""

        metadata = event.metadata
        required = {
            PRODUCT_ID_KEY: metadata.get(PRODUCT_ID_KEY),
            BENEFICIARY_ID_KEY: metadata.get(BENEFICIARY_ID_KEY),
            TENANT_ID_KEY: metadata.get(TENANT_ID_KEY),
            PURCHASE_TYPE_KEY: metadata.get(PURCHASE_TYPE_KEY),
        }
        missing = sorted(key for key, value in required.items() if not (value or "").strip())
        if not event.session_id and not event.payment_id:
            missing.append("sessionId|paymentId")
        if missing:
            raise MetadataError(
                f"Missing required metadata: {', '.join(missing)}",
                code="missing_metadata",
                detail={"missing": missing},
            )

        raw_type = required[PURCHASE_TYPE_KEY].strip()
        try:
            purchase_type = PurchaseType(raw_type)
        except ValueError as exc:
            raise MetadataError(
                f"Unsupported purchase type: {raw_type}",
                code=UNSUPPORTED_PURCHASE_TYPE,
                detail={"type": raw_type},
            ) from exc
        upgrade_from = (metadata.get(UPGRADE_FROM_KEY) or "").strip() or None
        if purchase_type == PurchaseType.PASS_UPGRADE and upgrade_from is None:
            raise MetadataError(
                f"Missing required metadata: {UPGRADE_FROM_KEY}",
                code="missing_metadata",
                detail={"missing": [UPGRADE_FROM_KEY]},
            )

        return cls(
            product_id=required[PRODUCT_ID_KEY].strip(),
            beneficiary_id=required[BENEFICIARY_ID_KEY].strip(),
            tenant_id=required[TENANT_ID_KEY].strip(),
            purchase_type=purchase_type,
            session_id=event.session_id,
            payment_id=event.payment_id,
            upgrade_from_subscription_id=upgrade_from,
        )


class Subscription(BaseModel):
    """Issued, beneficiary-specific grant of access derived from a pass."""

    subscription_id: str
    beneficiary_id: str
    tenant_id: str
    policy_id: str
    policy_name: str
    policy_kind: PassKind
    subscription_type: SubscriptionType
    start_date: datetime
    end_date: datetime
    classes_used: int = Field(default=0, ge=0)
    classes_limit: Optional[int] = None
    is_active: bool = True
    session_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    webhook_event_id: Optional[str] = None
    is_upgrade: bool = False
    upgraded_from_subscription_id: Optional[str] = None
    upgraded_at: Optional[datetime] = None
    upgraded_to_policy_id: Optional[str] = None
    upgraded_to_policy_name: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("start_date", "end_date", "created_at", "updated_at")
    @classmethod
    def _utc_dates(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def is_unlimited(self) -> bool:
        return self.classes_limit is None

    @property
    def has_valid_window(self) -> bool:
        return self.start_date < self.end_date


class ProvisionedSubscription(NamedTuple):
    subscription: Subscription
    created: bool


class ProcessingError(BaseModel):
    """Error summary attached to a failed processing result."""

    code: str
    message: str
    retryable: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessingResult(BaseModel):
    """Terminal result of driving one event through the state machine."""

    event_id: str
    event_type: str
    state: ProcessingState
    outcome: ProcessingOutcome
    transitions: Tuple[ProcessingState, ...] = ()
    subscription: Optional[Subscription] = None
    error: Optional[ProcessingError] = None
    skip_reason: Optional[str] = None
    attempts: int = 1
    duration_ms: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AuditEntry(BaseModel):
    """Append-only record of one processing attempt."""

    entry_id: str
    event_id: str
    event_type: str
    outcome: ProcessingOutcome
    final_state: ProcessingState
    correlation: Dict[str, str] = Field(default_factory=dict)
    subscription_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False
    attempts: int = 1
    duration_ms: int = 0
    recorded_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Transaction(BaseModel):
    """Completed transaction as listed by the payment processor."""

    session_id: str
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    completed_at: datetime
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("completed_at")
    @classmethod
    def _utc_completed_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def to_event(self) -> PaymentEvent:
        """Synthesize the payment event the webhook would have delivered."""

        return PaymentEvent(
            event_id=f"reconcile:{self.session_id}",
            event_type=CHECKOUT_COMPLETED,
            session_id=self.session_id,
            payment_id=self.payment_id,
            amount=self.amount,
            currency=self.currency,
            completed_at=self.completed_at,
            metadata=dict(self.metadata),
            source=EventSource.RECONCILIATION,
        )


class ReconciliationGap(BaseModel):
    """A completed transaction with no matching subscription."""

    session_id: str
    payment_id: Optional[str] = None
    tenant_id: str
    beneficiary_id: Optional[str] = None
    product_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    completed_at: datetime

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconciliationReport(BaseModel):
    """Summary of a reconciliation sweep over a time window."""

    tenant_id: str
    window_start: datetime
    window_end: datetime
    checked: int = 0
    matched: int = 0
    ignored: int = 0
    healed: int = 0
    failed: int = 0
    complete: bool = True
    gaps: List[ReconciliationGap] = Field(default_factory=list)
    results: List[ProcessingResult] = Field(default_factory=list)
    failures: List[AuditEntry] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


def _optional_str(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _optional_int(value: object) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _stripe_id(value: object) -> Optional[str]:
    if isinstance(value, Mapping):
        return _optional_str(value.get("id"))
    return _optional_str(value)


def _safe_metadata(value: object) -> Dict[str, str]:
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


__all__ = [
    "AuditEntry",
    "CHECKOUT_ASYNC_PAYMENT_SUCCEEDED",
    "CHECKOUT_COMPLETED",
    "CorrelationMetadata",
    "EventSource",
    "PAID_PAYMENT_STATUSES",
    "PassKind",
    "PassPolicy",
    "PaymentEvent",
    "ProcessingError",
    "ProcessingOutcome",
    "ProcessingResult",
    "ProcessingState",
    "ProvisionedSubscription",
    "PurchaseType",
    "ReconciliationGap",
    "ReconciliationReport",
    "SUPPORTED_EVENT_TYPES",
    "UNSUPPORTED_PURCHASE_TYPE",
    "Subscription",
    "SubscriptionType",
    "Transaction",
    "ValidityMode",
    "ValidityType",
    "ValidityWindow",
]
