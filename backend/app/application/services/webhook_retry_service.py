"""Bounded retry with exponential backoff for webhook handlers."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.core.config import Settings, settings
from app.domain.errors import is_retryable
from app.infrastructure.observability.metrics import WEBHOOK_RETRY_ATTEMPTS_TOTAL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 16.0
    budget_seconds: float | None = 25.0
    jitter_ratio: float = 0.0

    @classmethod
    def from_settings(cls, app_settings: Settings = settings) -> RetryPolicy:
        return cls(
            max_attempts=max(1, app_settings.webhook_retry_max_attempts),
            base_delay_seconds=app_settings.webhook_retry_base_delay_seconds,
            max_delay_seconds=app_settings.webhook_retry_max_delay_seconds,
            budget_seconds=app_settings.webhook_retry_budget_seconds or None,
            jitter_ratio=app_settings.webhook_retry_jitter_ratio,
        )

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        if self.jitter_ratio > 0:
            delay += delay * random.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, delay)


@dataclass
class RetryOutcome:
    success: bool
    retry_count: int
    result: Any = None
    error: BaseException | None = None
    processing_history: list[dict] = field(default_factory=list)


def _history_entry(attempt: int, exc: BaseException | None) -> dict:
    entry = {
        "attempt": attempt,
        "timestamp": datetime.now(UTC).isoformat(),
        "error": None,
        "error_type": None,
        "retryable": None,
    }
    if exc is not None:
        entry.update(error=str(exc)[:1000], error_type=type(exc).__name__, retryable=is_retryable(exc))
    return entry


def execute_with_retry(
    operation: Callable[[], Any],
    context: dict | None = None,
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> RetryOutcome:
    """Runs ``operation`` until it succeeds, fails non-retryably, or the policy runs out.

    ``retry_count`` is the number of failed attempts before success, 0 for a
    non-retryable failure and the number of attempts made on exhaustion.
    ``processing_history`` holds one entry per attempt in order.
    """
    policy = policy or RetryPolicy.from_settings()
    context = context or {}
    history: list[dict] = []
    started_at = clock()
    attempt = 0

    while True:
        attempt += 1
        try:
            result = operation()
        except Exception as exc:
            history.append(_history_entry(attempt, exc))
            if not is_retryable(exc):
                logger.warning(
                    "webhook_handler_failed_non_retryable event_id=%s attempt=%s error=%s",
                    context.get("event_id"),
                    attempt,
                    exc,
                )
                return RetryOutcome(success=False, retry_count=0, error=exc, processing_history=history)

            if attempt >= policy.max_attempts:
                logger.error(
                    "webhook_handler_retries_exhausted event_id=%s attempts=%s error=%s",
                    context.get("event_id"),
                    attempt,
                    exc,
                )
                return RetryOutcome(success=False, retry_count=attempt, error=exc, processing_history=history)

            delay = policy.delay_for(attempt)
            elapsed = clock() - started_at
            if policy.budget_seconds is not None and elapsed + delay > policy.budget_seconds:
                logger.error(
                    "webhook_handler_retry_budget_exceeded event_id=%s attempts=%s elapsed_seconds=%.2f",
                    context.get("event_id"),
                    attempt,
                    elapsed,
                )
                return RetryOutcome(success=False, retry_count=attempt, error=exc, processing_history=history)

            WEBHOOK_RETRY_ATTEMPTS_TOTAL.inc()
            logger.warning(
                "webhook_handler_retry_scheduled event_id=%s attempt=%s delay_seconds=%.2f error=%s",
                context.get("event_id"),
                attempt,
                delay,
                exc,
            )
            sleep(delay)
            continue

        history.append(_history_entry(attempt, None))
        if attempt > 1:
            logger.info("webhook_handler_recovered event_id=%s attempts=%s", context.get("event_id"), attempt)
        return RetryOutcome(success=True, retry_count=attempt - 1, result=result, processing_history=history)
