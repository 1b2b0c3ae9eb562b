"""Bounded retry with linear backoff for transient store failures."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Event
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from .errors import RetryInterrupted, TransientStoreError

logger = logging.getLogger("provisioning")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retries ``TransientStoreError`` up to ``max_attempts`` times.

    The delay before attempt ``n + 1`` is ``backoff_seconds * n``. Waiting
    happens on ``shutdown_event`` so a shutdown request cuts the wait short
    and raises :class:`RetryInterrupted`.
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    shutdown_event: Event = field(default_factory=Event)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * attempt

    def run(
        self,
        operation: Callable[[], T],
        *,
        description: str = "operation",
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[T, int]:
        """Run ``operation`` and return its result with the number of attempts used.

        Non-transient errors propagate at once. When the bound is exhausted
        the last transient error is raised with ``detail["attempts"]`` set.
        """

        attempt = 0
        while True:
            attempt += 1
            try:
                return operation(), attempt
            except TransientStoreError as exc:
                exc.detail["attempts"] = attempt
                if isinstance(exc, RetryInterrupted) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Transient failure during %s (attempt %s/%s), retrying in %.2fs: %s",
                    description,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc.message,
                    extra={**(context or {}), "attempt": attempt},
                )
                if self.shutdown_event.wait(delay):
                    raise RetryInterrupted(
                        f"Shutdown requested while retrying {description}",
                        detail={"attempts": attempt},
                    ) from exc


__all__ = ["RetryPolicy"]
