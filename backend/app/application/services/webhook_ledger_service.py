"""Per-event idempotency ledger for billing notifications.

A row moves ``processing`` -> ``processed`` | ``failed_to_dlq``. Terminal rows
are never rewritten; a ``processing`` row left behind by a crashed attempt is
not terminal, so a redelivery of the same event may legitimately retry it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.domain.models.webhook_event import TERMINAL_STATUSES, WebhookEvent, WebhookEventStatus
from app.infrastructure.db.conditional_writes import translate_storage_errors, upsert

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000


def is_processed(db: Session, event_id: str) -> bool:
    with translate_storage_errors("ledger_read"):
        status_value = db.execute(select(WebhookEvent.status).where(WebhookEvent.event_id == event_id)).scalar_one_or_none()
    return status_value in TERMINAL_STATUSES


def get_event(db: Session, event_id: str) -> WebhookEvent | None:
    with translate_storage_errors("ledger_read"):
        return db.get(WebhookEvent, event_id, populate_existing=True)


def record_received(
    db: Session,
    *,
    event_id: str,
    event_type: str,
    payload: str,
    tenant_id: str | None,
    now: datetime | None = None,
) -> bool:
    """Writes the ``processing`` row; False when the event is already terminal."""
    now = now or datetime.now(UTC)
    written = upsert(
        db,
        WebhookEvent,
        {
            "event_id": event_id,
            "event_type": event_type,
            "payload": payload,
            "tenant_id": tenant_id,
            "status": WebhookEventStatus.PROCESSING.value,
            "error": None,
            "received_at": now,
            "updated_at": now,
            "expires_at": now + timedelta(days=settings.webhook_event_ttl_days),
        },
        update_columns=["event_type", "payload", "tenant_id", "status", "error", "updated_at"],
        where=WebhookEvent.status.not_in(TERMINAL_STATUSES),
    )
    if not written:
        logger.info("webhook_event_already_terminal event_id=%s", event_id)
    return written


def mark_terminal(db: Session, event_id: str, status: str, error: str | None = None) -> bool:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"'{status}' is not a terminal webhook event status")

    with translate_storage_errors("ledger_mark_terminal"):
        result = db.execute(
            WebhookEvent.__table__.update()
            .where(WebhookEvent.event_id == event_id, WebhookEvent.status.not_in(TERMINAL_STATUSES))
            .values(status=status, error=error[:MAX_ERROR_LENGTH] if error else None, updated_at=datetime.now(UTC))
        )
    if not result.rowcount:
        logger.warning("webhook_event_terminal_unchanged event_id=%s status=%s", event_id, status)
        return False
    return True


def purge_expired(db: Session, now: datetime | None = None) -> int:
    now = now or datetime.now(UTC)
    with translate_storage_errors("ledger_purge"):
        result = db.execute(delete(WebhookEvent).where(WebhookEvent.expires_at < now))
    return int(result.rowcount or 0)
