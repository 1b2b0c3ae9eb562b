"""API routes for payment webhooks and provisioning administration."""
from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ..provisioning import (
    AuditWriteError,
    AuthenticityError,
    PolicyError,
    ProcessingState,
    ProvisioningError,
    RetryInterrupted,
)
from ..schemas.provisioning import (
    DuplicateRemovalRequest,
    DuplicateRemovalResponse,
    ExpiryCorrectionRequest,
    ReconciliationRequest,
    ReconciliationResponse,
    SubscriptionResponse,
    WebhookAckResponse,
)
from ..services import provisioning as provisioning_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["provisioning"])
admin_router = APIRouter(prefix="/api/admin", tags=["provisioning-admin"])


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/api/stripe/webhook", response_model=WebhookAckResponse)
def stripe_webhook(
    payload: bytes = Depends(_raw_body),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookAckResponse:
    processor = provisioning_service.get_event_processor()
    try:
        result = processor.handle_webhook(payload, stripe_signature)
    except AuthenticityError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except AuditWriteError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc

    if result.state == ProcessingState.FAILED and result.error and result.error.code == RetryInterrupted.code:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Shutting down; redeliver the event",
        )
    return WebhookAckResponse.from_result(result)


def _require_admin(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    expected = provisioning_service.get_provisioning_config().admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API is not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


@admin_router.post("/reconciliation", response_model=ReconciliationResponse)
def run_reconciliation(
    payload: ReconciliationRequest,
    _: None = Depends(_require_admin),
) -> ReconciliationResponse:
    config = provisioning_service.get_provisioning_config()
    sweep = provisioning_service.get_reconciliation_sweep()
    heal = config.reconciliation_heal if payload.heal is None else payload.heal

    try:
        if payload.session_id:
            report = sweep.check_session(payload.tenant_id, payload.session_id, heal=heal)
        else:
            end = payload.until or datetime.now(timezone.utc)
            start = payload.since or end - timedelta(days=config.reconciliation_window_days)
            report = sweep.run(payload.tenant_id, start=start, end=end, heal=heal)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ProvisioningError as exc:
        if exc.retryable:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    return ReconciliationResponse.from_report(report)


@admin_router.post("/subscriptions/{subscription_id}/expiry", response_model=SubscriptionResponse)
def correct_subscription_expiry(
    subscription_id: str,
    payload: ExpiryCorrectionRequest,
    _: None = Depends(_require_admin),
) -> SubscriptionResponse:
    admin = provisioning_service.get_subscription_administration()
    try:
        subscription = admin.correct_expiry(subscription_id, payload.end_date, reason=payload.reason)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (ValueError, PolicyError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SubscriptionResponse(subscription=subscription)


@admin_router.post("/subscriptions/duplicates/remove", response_model=DuplicateRemovalResponse)
def remove_duplicate_subscriptions(
    payload: DuplicateRemovalRequest,
    _: None = Depends(_require_admin),
) -> DuplicateRemovalResponse:
    admin = provisioning_service.get_subscription_administration()
    try:
        removed = admin.remove_duplicates(session_id=payload.session_id, payment_id=payload.payment_id)
    except ProvisioningError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    return DuplicateRemovalResponse(removed=removed)


__all__ = ["admin_router", "router"]
