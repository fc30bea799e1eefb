import logging

from fastapi import HTTPException

from app.application.services.dead_letter_service import replay_dead_letter
from app.application.services.webhook_ledger_service import purge_expired
from app.domain import models  # noqa: F401
from app.infrastructure.cache.redis_client import write_worker_heartbeat
from app.infrastructure.db.session import SessionLocal
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="workers.tasks.worker_heartbeat")
def worker_heartbeat() -> dict:
    return {"heartbeat_at": write_worker_heartbeat()}


@celery_app.task(name="workers.tasks.purge_expired_webhook_events")
def purge_expired_webhook_events() -> dict:
    with SessionLocal() as db:
        affected = purge_expired(db)
        db.commit()
    logger.info("webhook_ledger_purge completed affected=%s", affected)
    return {"purged_events": affected}


@celery_app.task(name="workers.tasks.replay_dead_letter_entry", acks_late=True)
def replay_dead_letter_entry(dlq_entry_id: str) -> dict:
    with SessionLocal() as db:
        try:
            entry = replay_dead_letter(db, dlq_entry_id)
        except HTTPException as exc:
            logger.warning("dead_letter_replay_skipped dlq_entry_id=%s reason=%s", dlq_entry_id, exc.detail)
            return {"dlq_entry_id": dlq_entry_id, "status": "skipped", "reason": str(exc.detail)}
    return {"dlq_entry_id": entry.dlq_entry_id, "status": entry.status}
