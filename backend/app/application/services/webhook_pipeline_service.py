"""Ledger-guarded processing of one authenticated billing notification.

Flow: parse -> idempotency check -> ``processing`` row -> route -> handler
(retried for tenant-creating kinds) -> ``processed``; a failed handler lands
in the dead-letter table and the ledger row becomes ``failed_to_dlq``. The
provider always gets a 200 once the ledger row is durable.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.application.services import webhook_ledger_service as ledger
from app.application.services.dead_letter_service import add_to_dlq
from app.application.services.paddle_payload import custom_data, tenant_id_of
from app.application.services.webhook_event_router import WebhookEventKind, route
from app.application.services.webhook_retry_service import RetryPolicy, execute_with_retry
from app.domain.errors import StoreConflictError, TransientStoreError, WebhookValidationError
from app.domain.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.infrastructure.db.conditional_writes import translate_storage_errors
from app.infrastructure.logging.context import reset_event_id, reset_tenant_id, set_event_id, set_tenant_id
from app.infrastructure.observability.metrics import record_webhook_outcome

logger = logging.getLogger(__name__)

INVALID_EVENT_PREFIX = "invalid_"
INVALID_EVENT_TYPE = "invalid"
LEDGER_COLUMN_LIMITS = {
    "event_id": WebhookEvent.__table__.c.event_id.type.length,
    "event_type": WebhookEvent.__table__.c.event_type.type.length,
    "tenant_id": WebhookEvent.__table__.c.tenant_id.type.length,
}


class LedgerUnavailableError(RuntimeError):
    """The ledger row could not be written, so nothing about the event is durable."""


class LedgerRejectedError(WebhookValidationError):
    """The database refused the ledger row for this notification; redelivery would fail the same way."""


@dataclass
class PipelineResult:
    success: bool
    message: str
    event_id: str
    retry_count: int = 0
    deduplicated: bool = False

    def to_response(self) -> dict:
        body = {
            "success": self.success,
            "message": self.message,
            "event_id": self.event_id,
            "retry_count": self.retry_count,
        }
        if self.deduplicated:
            body["deduplicated"] = True
        return body


def _synthetic_event_id(payload_bytes: bytes) -> str:
    return f"{INVALID_EVENT_PREFIX}{hashlib.sha256(payload_bytes).hexdigest()[:32]}"


def parse_notification(payload_bytes: bytes) -> dict:
    try:
        payload = json.loads(payload_bytes)
    except ValueError as exc:
        raise WebhookValidationError("Notification body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise WebhookValidationError("Notification body is not a JSON object")

    missing = [key for key in ("event_id", "event_type") if not str(payload.get(key) or "").strip()]
    if missing:
        raise WebhookValidationError(f"Notification is missing {', '.join(missing)}")

    fields = {
        "event_id": str(payload["event_id"]).strip(),
        "event_type": str(payload["event_type"]).strip(),
        "tenant_id": tenant_id_of(payload) or "",
    }
    oversized = [name for name, value in fields.items() if len(value) > LEDGER_COLUMN_LIMITS[name]]
    if oversized:
        raise WebhookValidationError(f"Notification {', '.join(oversized)} exceeds the stored length")
    return payload


def _record_received(db: Session, *, event_id: str, event_type: str, payload_text: str, tenant_id: str | None) -> bool:
    """Only transient storage failures become ``LedgerUnavailableError`` (HTTP 500)."""
    try:
        with translate_storage_errors("ledger_record_received"):
            written = ledger.record_received(
                db,
                event_id=event_id,
                event_type=event_type,
                payload=payload_text,
                tenant_id=tenant_id,
            )
            db.commit()
    except TransientStoreError as exc:
        db.rollback()
        logger.exception("webhook_ledger_write_failed event_id=%s", event_id)
        raise LedgerUnavailableError(f"Could not record webhook event {event_id}") from exc
    except (StoreConflictError, SQLAlchemyError) as exc:
        db.rollback()
        logger.exception("webhook_ledger_write_rejected event_id=%s", event_id)
        raise LedgerRejectedError(f"Ledger rejected webhook event {event_id}: {type(exc).__name__}") from exc
    return written


def _mark_terminal(db: Session, event_id: str, status: str, error: str | None = None) -> None:
    try:
        ledger.mark_terminal(db, event_id, status, error)
        db.commit()
    except (SQLAlchemyError, TransientStoreError, StoreConflictError):
        # The row stays ``processing``; a redelivery may process it again.
        db.rollback()
        logger.exception("webhook_ledger_terminal_write_failed event_id=%s status=%s", event_id, status)


def _duplicate(event_id: str, kind: str) -> PipelineResult:
    record_webhook_outcome(kind, "duplicate")
    logger.info("webhook_event_duplicate event_id=%s", event_id)
    return PipelineResult(success=True, message="Event already processed", event_id=event_id, deduplicated=True)


def _dead_letter(
    db: Session,
    *,
    event_id: str,
    event_type: str,
    payload_text: str,
    payload: dict,
    error: BaseException,
    retry_count: int,
    processing_history: list[dict],
    max_attempts: int,
    kind: str,
) -> PipelineResult:
    user_id = custom_data(payload).get("userId")
    add_to_dlq(
        db,
        event_id=event_id,
        event_type=event_type,
        payload=payload_text,
        error=error,
        retry_count=retry_count,
        processing_history=processing_history,
        max_attempts=max_attempts,
        company_id=tenant_id_of(payload),
        user_id=str(user_id) if user_id else None,
    )
    _mark_terminal(db, event_id, WebhookEventStatus.FAILED_TO_DLQ.value, str(error))
    record_webhook_outcome(kind, "dead_lettered")
    return PipelineResult(
        success=False,
        message="Webhook processing failed; moved to dead-letter queue",
        event_id=event_id,
        retry_count=retry_count,
    )


def _process_invalid(db: Session, payload_bytes: bytes, error: WebhookValidationError) -> PipelineResult:
    event_id = _synthetic_event_id(payload_bytes)
    payload_text = payload_bytes.decode("utf-8", errors="replace")
    if ledger.is_processed(db, event_id):
        return _duplicate(event_id, INVALID_EVENT_TYPE)
    try:
        written = _record_received(db, event_id=event_id, event_type=INVALID_EVENT_TYPE, payload_text=payload_text, tenant_id=None)
    except LedgerRejectedError as exc:
        raise LedgerUnavailableError(f"Could not record invalid webhook event {event_id}") from exc
    if not written:
        return _duplicate(event_id, INVALID_EVENT_TYPE)

    logger.warning("webhook_event_invalid event_id=%s error=%s", event_id, error)
    history = [
        {
            "attempt": 1,
            "timestamp": datetime.now(UTC).isoformat(),
            "error": str(error),
            "error_type": type(error).__name__,
            "retryable": False,
        }
    ]
    return _dead_letter(
        db,
        event_id=event_id,
        event_type=INVALID_EVENT_TYPE,
        payload_text=payload_text,
        payload={},
        error=error,
        retry_count=0,
        processing_history=history,
        max_attempts=1,
        kind=INVALID_EVENT_TYPE,
    )


def process_notification(
    db: Session,
    payload_bytes: bytes,
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineResult:
    """Processes an already authenticated notification body.

    Raises ``LedgerUnavailableError`` when a transient storage failure keeps the
    ledger row from being written; a row the database refuses outright is
    dead-lettered under a synthetic id instead. Every other outcome is
    reported through the returned ``PipelineResult``.
    """
    try:
        payload = parse_notification(payload_bytes)
    except WebhookValidationError as exc:
        return _process_invalid(db, payload_bytes, exc)

    event_id = str(payload["event_id"]).strip()
    event_type = str(payload["event_type"]).strip()
    payload_text = payload_bytes.decode("utf-8", errors="replace")
    tenant_id = tenant_id_of(payload)
    routed = route(event_type)
    kind = routed.kind.value

    event_token = set_event_id(event_id)
    tenant_token = set_tenant_id(tenant_id)
    try:
        if ledger.is_processed(db, event_id):
            return _duplicate(event_id, kind)
        try:
            written = _record_received(db, event_id=event_id, event_type=event_type, payload_text=payload_text, tenant_id=tenant_id)
        except LedgerRejectedError as exc:
            return _process_invalid(db, payload_bytes, exc)
        if not written:
            return _duplicate(event_id, kind)

        if routed.kind is WebhookEventKind.UNRECOGNIZED:
            _mark_terminal(db, event_id, WebhookEventStatus.PROCESSED.value)
            record_webhook_outcome(kind, "ignored")
            return PipelineResult(success=True, message=f"Event type {event_type} not handled", event_id=event_id)

        base_policy = policy or RetryPolicy.from_settings()
        effective_policy = base_policy if routed.retried else dataclasses.replace(base_policy, max_attempts=1)
        outcome = execute_with_retry(
            lambda: routed.attempt(db, payload),
            {"event_id": event_id, "event_type": event_type},
            policy=effective_policy,
            sleep=sleep,
        )

        if not outcome.success:
            return _dead_letter(
                db,
                event_id=event_id,
                event_type=event_type,
                payload_text=payload_text,
                payload=payload,
                error=outcome.error,
                retry_count=outcome.retry_count,
                processing_history=outcome.processing_history,
                max_attempts=effective_policy.max_attempts,
                kind=kind,
            )

        _mark_terminal(db, event_id, WebhookEventStatus.PROCESSED.value)
        record_webhook_outcome(kind, "processed")
        logger.info("webhook_event_processed event_id=%s event_type=%s retry_count=%s", event_id, event_type, outcome.retry_count)
        return PipelineResult(
            success=True,
            message="Webhook processed successfully",
            event_id=event_id,
            retry_count=outcome.retry_count,
        )
    finally:
        reset_tenant_id(tenant_token)
        reset_event_id(event_token)
