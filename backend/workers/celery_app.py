from celery import Celery
from celery.schedules import schedule
from kombu import Queue

from app.core.config import settings

celery_app = Celery(
    "expense_ledger",
    broker=settings.cache_redis_url,
    backend=settings.cache_redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="webhooks",
    task_queues=(
        Queue("webhooks"),
        Queue("maintenance"),
    ),
    task_routes={
        "workers.tasks.replay_dead_letter_entry": {"queue": "webhooks"},
        "workers.tasks.purge_expired_webhook_events": {"queue": "maintenance"},
        "workers.tasks.worker_heartbeat": {"queue": "maintenance"},
    },
    beat_schedule={
        "worker-heartbeat-every-15s": {
            "task": "workers.tasks.worker_heartbeat",
            "schedule": schedule(15.0),
            "options": {"queue": "maintenance"},
        },
        "webhook-ledger-purge-daily": {
            "task": "workers.tasks.purge_expired_webhook_events",
            "schedule": schedule(86400.0),
            "options": {"queue": "maintenance"},
        },
    },
)

celery_app.autodiscover_tasks(["workers"])
