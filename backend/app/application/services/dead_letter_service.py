"""Dead-letter storage for notifications the pipeline gave up on, plus operator actions."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.application.services.webhook_event_router import route
from app.application.services.webhook_retry_service import RetryPolicy, execute_with_retry
from app.domain.errors import WebhookValidationError, error_category
from app.domain.models.webhook_dead_letter import DeadLetterStatus, WebhookDeadLetter
from app.infrastructure.observability.metrics import WEBHOOK_DEAD_LETTERS_TOTAL

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000
DEFAULT_LIST_LIMIT = 50
REPLAYABLE_STATUSES = {DeadLetterStatus.EXHAUSTED.value, DeadLetterStatus.PENDING_RETRY.value}
OPEN_STATUSES = REPLAYABLE_STATUSES
DLQ_ENTRY_ID_LENGTH = WebhookDeadLetter.__table__.c.dlq_entry_id.type.length


def _dlq_entry_id(event_id: str) -> str:
    suffix = int(time.time() * 1000)
    entry_id = f"dlq_{event_id}_{suffix}"
    if len(entry_id) <= DLQ_ENTRY_ID_LENGTH:
        return entry_id
    return f"dlq_{hashlib.sha256(event_id.encode('utf-8')).hexdigest()[:32]}_{suffix}"


def _first_failed_at(processing_history: list[dict]) -> datetime | None:
    for entry in processing_history:
        if entry.get("error") and entry.get("timestamp"):
            return datetime.fromisoformat(entry["timestamp"])
    return None


def add_to_dlq(
    db: Session,
    *,
    event_id: str,
    event_type: str,
    payload: str,
    error: BaseException,
    retry_count: int,
    processing_history: list[dict],
    max_attempts: int,
    company_id: str | None = None,
    user_id: str | None = None,
) -> WebhookDeadLetter | None:
    """Persists a dead-letter row; failures here are logged and never raised."""
    now = datetime.now(UTC)
    category = error_category(error)
    try:
        entry = WebhookDeadLetter(
            dlq_entry_id=_dlq_entry_id(event_id),
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            company_id=company_id,
            user_id=user_id,
            last_error=str(error)[:MAX_ERROR_LENGTH] or type(error).__name__,
            error_category=category,
            attempt_count=retry_count,
            max_attempts=max_attempts,
            processing_history=list(processing_history),
            status=DeadLetterStatus.EXHAUSTED.value,
            first_failed_at=_first_failed_at(processing_history) or now,
            dead_lettered_at=now,
            updated_at=now,
        )
        db.add(entry)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("dead_letter_write_failed event_id=%s event_type=%s", event_id, event_type)
        return None

    WEBHOOK_DEAD_LETTERS_TOTAL.labels(error_category=category).inc()
    logger.error(
        "webhook_event_dead_lettered event_id=%s dlq_entry_id=%s attempts=%s category=%s",
        event_id,
        entry.dlq_entry_id,
        retry_count,
        category,
    )
    return entry


def list_dead_letters(
    db: Session,
    *,
    status_filter: str | None = DeadLetterStatus.EXHAUSTED.value,
    limit: int = DEFAULT_LIST_LIMIT,
) -> list[WebhookDeadLetter]:
    query = select(WebhookDeadLetter).order_by(WebhookDeadLetter.dead_lettered_at.desc()).limit(max(1, min(limit, 500)))
    if status_filter:
        query = query.where(WebhookDeadLetter.status == status_filter)
    return list(db.execute(query).scalars().all())


def get_dead_letter(db: Session, dlq_entry_id: str) -> WebhookDeadLetter:
    entry = db.get(WebhookDeadLetter, dlq_entry_id, populate_existing=True)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead letter entry not found")
    return entry


def resolve_dead_letter(db: Session, dlq_entry_id: str, *, resolution: str) -> WebhookDeadLetter:
    entry = get_dead_letter(db, dlq_entry_id)
    if entry.status not in OPEN_STATUSES:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Dead letter entry is already {entry.status}")

    now = datetime.now(UTC)
    entry.status = DeadLetterStatus.MANUALLY_RESOLVED.value
    entry.resolution = resolution
    entry.resolved_at = now
    entry.updated_at = now
    db.add(entry)
    db.commit()
    logger.info("dead_letter_resolved dlq_entry_id=%s event_id=%s", entry.dlq_entry_id, entry.event_id)
    return entry


def mark_pending_retry(db: Session, dlq_entry_id: str) -> WebhookDeadLetter:
    entry = get_dead_letter(db, dlq_entry_id)
    if entry.status not in REPLAYABLE_STATUSES:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Dead letter entry is already {entry.status}")

    entry.status = DeadLetterStatus.PENDING_RETRY.value
    entry.updated_at = datetime.now(UTC)
    db.add(entry)
    db.commit()
    return entry


def replay_dead_letter(
    db: Session,
    dlq_entry_id: str,
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> WebhookDeadLetter:
    """Re-runs the routed handler for a parked notification.

    The idempotency ledger is not consulted or rewritten; handlers are safe to
    re-run. New attempts are appended to the entry's processing history.
    """
    entry = mark_pending_retry(db, dlq_entry_id)

    try:
        payload = json.loads(entry.payload)
    except ValueError:
        payload = None

    if not isinstance(payload, dict):
        outcome_error: BaseException = WebhookValidationError("Dead letter payload is not a JSON object")
        success, history, attempts = False, [], 0
    else:
        routed = route(payload.get("event_type") or entry.event_type)
        if not routed.recognized:
            outcome_error = WebhookValidationError(f"No handler for event type '{routed.event_type}'")
            success, history, attempts = False, [], 0
        else:
            outcome = execute_with_retry(
                lambda: routed.attempt(db, payload),
                {"event_id": entry.event_id, "dlq_entry_id": entry.dlq_entry_id},
                policy=policy,
                sleep=sleep,
            )
            success, history, attempts = outcome.success, outcome.processing_history, outcome.retry_count
            outcome_error = outcome.error

    entry = get_dead_letter(db, dlq_entry_id)
    now = datetime.now(UTC)
    offset = len(entry.processing_history or [])
    replayed_history = [{**item, "attempt": offset + index + 1, "replay": True} for index, item in enumerate(history)]
    entry.processing_history = [*(entry.processing_history or []), *replayed_history]
    entry.updated_at = now
    if success:
        entry.status = DeadLetterStatus.REPLAYED.value
        entry.resolution = "replayed"
        entry.resolved_at = now
        logger.info("dead_letter_replayed dlq_entry_id=%s event_id=%s", entry.dlq_entry_id, entry.event_id)
    else:
        entry.status = DeadLetterStatus.EXHAUSTED.value
        entry.attempt_count = (entry.attempt_count or 0) + max(attempts, len(history))
        entry.last_error = str(outcome_error)[:MAX_ERROR_LENGTH] if outcome_error else entry.last_error
        if outcome_error is not None:
            entry.error_category = error_category(outcome_error)
        logger.warning("dead_letter_replay_failed dlq_entry_id=%s event_id=%s", entry.dlq_entry_id, entry.event_id)

    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    return entry


def enqueue_dead_letter_replay(dlq_entry_id: str) -> str:
    from workers.tasks import replay_dead_letter_entry  # local import to avoid import cycle

    result = replay_dead_letter_entry.apply_async(kwargs={"dlq_entry_id": dlq_entry_id})
    logger.info("dead_letter_replay_enqueued dlq_entry_id=%s task_id=%s", dlq_entry_id, result.id)
    return str(result.id)
