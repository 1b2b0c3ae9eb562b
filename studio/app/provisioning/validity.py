"""Validity window and usage limit calculation for issued passes.

Every function here is pure: the activation instant is always passed in and
the clock is never consulted. Calendar arithmetic happens in UTC.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import PolicyError
from .models import PassKind, PassPolicy, SubscriptionType, ValidityMode, ValidityWindow

_SUBSCRIPTION_TYPES = {
    PassKind.SINGLE: SubscriptionType.SINGLE,
    PassKind.MULTI_PASS: SubscriptionType.MULTI_PASS,
    PassKind.CLIPCARD: SubscriptionType.CLIPCARD,
    PassKind.UNLIMITED: SubscriptionType.MONTHLY,
}


def compute_window(policy: PassPolicy, activation_instant: datetime) -> ValidityWindow:
    """Return the ``[start, end)`` window for a pass activated at ``activation_instant``.

    Raises :class:`PolicyError` when the pass declares no usable validity rule
    or when a fixed expiry is not strictly after the activation instant.
    """

    if activation_instant.tzinfo is None:
        raise ValueError("activation_instant must be timezone-aware")
    start = activation_instant.astimezone(timezone.utc)

    mode = policy.validity_mode()
    if mode == ValidityMode.FIXED_DATE:
        assert policy.expiry_date is not None
        end = policy.expiry_date.astimezone(timezone.utc)
        if end <= start:
            raise PolicyError(
                f"Pass {policy.policy_id} expires at {end.isoformat()}, not after activation at {start.isoformat()}",
                code="invalid_window",
                detail={"policy_id": policy.policy_id, "start": start.isoformat(), "end": end.isoformat()},
            )
        return ValidityWindow(start=start, end=end)

    assert policy.validity_days is not None
    return ValidityWindow(start=start, end=start + timedelta(days=policy.validity_days))


def usage_limit_for(policy: PassPolicy) -> Optional[int]:
    """Number of classes the pass grants, ``None`` meaning unlimited."""

    if policy.kind == PassKind.SINGLE:
        return 1
    if policy.kind == PassKind.UNLIMITED:
        return None
    if policy.classes_limit is None or policy.classes_limit < 1:
        raise PolicyError(
            f"Pass {policy.policy_id} is count-limited but has no positive class limit",
            code="missing_classes_limit",
            detail={"policy_id": policy.policy_id},
        )
    return policy.classes_limit


def subscription_type_for(kind: PassKind) -> SubscriptionType:
    return _SUBSCRIPTION_TYPES[kind]


__all__ = ["compute_window", "subscription_type_for", "usage_limit_for"]
