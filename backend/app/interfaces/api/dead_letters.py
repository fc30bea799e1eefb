import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.application.services.dead_letter_service import (
    DEFAULT_LIST_LIMIT,
    enqueue_dead_letter_replay,
    list_dead_letters,
    mark_pending_retry,
    resolve_dead_letter,
)
from app.core.config import settings
from app.domain.models.webhook_dead_letter import DeadLetterStatus, WebhookDeadLetter
from app.infrastructure.db.session import get_db


def require_ops_token(x_ops_token: str | None = Header(default=None, alias="X-Ops-Token")) -> None:
    if not settings.ops_api_token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator API is disabled")
    if not x_ops_token or not hmac.compare_digest(x_ops_token, settings.ops_api_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid operator token")


router = APIRouter(prefix="/webhooks/dead-letters", tags=["webhooks"], dependencies=[Depends(require_ops_token)])


class ResolveDeadLetterRequest(BaseModel):
    resolution: str = Field(min_length=3, max_length=2000)


def _serialize(entry: WebhookDeadLetter, *, include_history: bool = False) -> dict:
    body = {
        "dlq_entry_id": entry.dlq_entry_id,
        "event_id": entry.event_id,
        "event_type": entry.event_type,
        "company_id": entry.company_id,
        "user_id": entry.user_id,
        "status": entry.status,
        "last_error": entry.last_error,
        "error_category": entry.error_category,
        "attempt_count": entry.attempt_count,
        "max_attempts": entry.max_attempts,
        "first_failed_at": entry.first_failed_at.isoformat() if entry.first_failed_at else None,
        "dead_lettered_at": entry.dead_lettered_at.isoformat() if entry.dead_lettered_at else None,
        "resolution": entry.resolution,
        "resolved_at": entry.resolved_at.isoformat() if entry.resolved_at else None,
    }
    if include_history:
        body["processing_history"] = entry.processing_history or []
    return body


@router.get("", status_code=status.HTTP_200_OK)
def get_dead_letters(
    status_filter: DeadLetterStatus | None = Query(default=DeadLetterStatus.EXHAUSTED, alias="status"),
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    entries = list_dead_letters(db, status_filter=status_filter.value if status_filter else None, limit=limit)
    return {"items": [_serialize(entry, include_history=True) for entry in entries], "count": len(entries)}


@router.post("/{dlq_entry_id}/resolve", status_code=status.HTTP_200_OK)
def resolve_entry(
    dlq_entry_id: str,
    payload: ResolveDeadLetterRequest,
    db: Session = Depends(get_db),
) -> dict:
    entry = resolve_dead_letter(db, dlq_entry_id, resolution=payload.resolution)
    return _serialize(entry)


@router.post("/{dlq_entry_id}/replay", status_code=status.HTTP_202_ACCEPTED)
def replay_entry(dlq_entry_id: str, db: Session = Depends(get_db)) -> dict:
    entry = mark_pending_retry(db, dlq_entry_id)
    task_id = enqueue_dead_letter_replay(entry.dlq_entry_id)
    return {**_serialize(entry), "task_id": task_id}
