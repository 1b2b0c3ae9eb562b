"""Provisioning configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple
import json
import os


@dataclass(frozen=True)
class ProvisioningConfig:
    """Configuration for webhook verification, retries and reconciliation."""

    webhook_secrets: Tuple[str, ...]
    signature_tolerance: int
    max_attempts: int
    backoff_seconds: float
    default_secret_key: Optional[str]
    reconciliation_window_days: int
    reconciliation_heal: bool
    admin_token: Optional[str]
    tenant_secret_keys: Dict[str, str] = field(default_factory=dict)

    def credential_for(self, tenant_id: str) -> str:
        """Payment processor secret key used for ``tenant_id``."""

        key = self.tenant_secret_keys.get(tenant_id) or self.default_secret_key
        if not key:
            raise LookupError(f"No payment processor credential configured for tenant {tenant_id}")
        return key


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _split_secrets(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _tenant_keys(value: Optional[str]) -> Dict[str, str]:
    if not value or not value.strip():
        return {}
    try:
        decoded = json.loads(value)
    except ValueError as exc:
        raise ValueError("TENANT_STRIPE_KEYS must be a JSON object") from exc
    if not isinstance(decoded, dict):
        raise ValueError("TENANT_STRIPE_KEYS must be a JSON object")
    return {str(tenant): str(key) for tenant, key in decoded.items() if key}


def load_provisioning_config(env: Optional[Mapping[str, str]] = None) -> ProvisioningConfig:
    """Load :class:`ProvisioningConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    webhook_secrets = _split_secrets(env_mapping.get("STRIPE_WEBHOOK_SECRETS"))
    if not webhook_secrets:
        webhook_secrets = _split_secrets(env_mapping.get("STRIPE_WEBHOOK_SECRET"))
    signature_tolerance = max(1, _to_int(env_mapping.get("STRIPE_SIGNATURE_TOLERANCE"), default=300))

    max_attempts = max(1, _to_int(env_mapping.get("PROVISIONING_MAX_ATTEMPTS"), default=3))
    backoff_seconds = max(0.0, _to_float(env_mapping.get("PROVISIONING_BACKOFF_SECONDS"), default=1.0))

    default_secret_key = (env_mapping.get("STRIPE_SECRET_KEY") or "").strip() or None
    tenant_secret_keys = _tenant_keys(env_mapping.get("TENANT_STRIPE_KEYS"))

    window_days = max(1, _to_int(env_mapping.get("RECONCILIATION_WINDOW_DAYS"), default=30))
    reconciliation_heal = _to_bool(env_mapping.get("RECONCILIATION_HEAL"), default=False)
    admin_token = (env_mapping.get("ADMIN_API_TOKEN") or "").strip() or None

    return ProvisioningConfig(
        webhook_secrets=webhook_secrets,
        signature_tolerance=signature_tolerance,
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
        default_secret_key=default_secret_key,
        reconciliation_window_days=window_days,
        reconciliation_heal=reconciliation_heal,
        admin_token=admin_token,
        tenant_secret_keys=tenant_secret_keys,
    )


__all__ = ["ProvisioningConfig", "load_provisioning_config"]
