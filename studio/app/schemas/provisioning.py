"""API schemas for provisioning endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..provisioning import (
    AuditEntry,
    ProcessingOutcome,
    ProcessingResult,
    ProcessingState,
    ReconciliationGap,
    ReconciliationReport,
    Subscription,
)


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_id: str = Field(alias="eventId")
    state: ProcessingState
    outcome: ProcessingOutcome
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    skip_reason: Optional[str] = Field(alias="skipReason", default=None)
    error_code: Optional[str] = Field(alias="errorCode", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ProcessingResult) -> "WebhookAckResponse":
        return cls(
            event_id=result.event_id,
            state=result.state,
            outcome=result.outcome,
            subscription_id=result.subscription.subscription_id if result.subscription else None,
            skip_reason=result.skip_reason,
            error_code=result.error.code if result.error else None,
        )


class ReconciliationRequest(BaseModel):
    tenant_id: str = Field(alias="tenantId", min_length=1)
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    session_id: Optional[str] = Field(alias="sessionId", default=None)
    heal: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True)


class ReconciliationResponse(BaseModel):
    tenant_id: str = Field(alias="tenantId")
    window_start: datetime = Field(alias="windowStart")
    window_end: datetime = Field(alias="windowEnd")
    checked: int
    matched: int
    ignored: int
    healed: int
    failed: int
    complete: bool
    gaps: List[ReconciliationGap]
    failures: List[AuditEntry]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> "ReconciliationResponse":
        return cls(
            tenant_id=report.tenant_id,
            window_start=report.window_start,
            window_end=report.window_end,
            checked=report.checked,
            matched=report.matched,
            ignored=report.ignored,
            healed=report.healed,
            failed=report.failed,
            complete=report.complete,
            gaps=report.gaps,
            failures=report.failures,
        )


class ExpiryCorrectionRequest(BaseModel):
    end_date: datetime = Field(alias="endDate")
    reason: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionResponse(BaseModel):
    subscription: Subscription


class DuplicateRemovalRequest(BaseModel):
    session_id: Optional[str] = Field(alias="sessionId", default=None)
    payment_id: Optional[str] = Field(alias="paymentId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class DuplicateRemovalResponse(BaseModel):
    removed: List[str]
