from time import perf_counter

from fastapi import APIRouter, Response, status
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.infrastructure.cache.redis_client import get_redis_client, worker_is_alive
from app.infrastructure.db.session import SessionLocal
from app.infrastructure.observability.metrics import measure_redis, metrics_response

router = APIRouter()


def _elapsed_ms(started_at: float) -> float:
    return round((perf_counter() - started_at) * 1000, 2)


def _probe_ledger_database() -> dict:
    started_at = perf_counter()
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return {"status": "down", "latency_ms": None}
    return {"status": "up", "latency_ms": _elapsed_ms(started_at)}


def _probe_replay_queue() -> dict:
    """Redis backs the dead-letter replay queue and the worker heartbeat."""
    started_at = perf_counter()
    try:
        client = get_redis_client()
        with measure_redis("health_ping"):
            client.ping()
        latency_ms = _elapsed_ms(started_at)
        return {"status": "up", "latency_ms": latency_ms, "worker_alive": worker_is_alive(client)}
    except RedisError:
        return {"status": "down", "latency_ms": None, "worker_alive": False}


@router.get("/health", status_code=status.HTTP_200_OK)
def health_check() -> dict:
    database = _probe_ledger_database()
    replay_queue = _probe_replay_queue()
    healthy = database["status"] == "up" and replay_queue["status"] == "up" and replay_queue["worker_alive"]
    return {
        "status": "ok" if healthy else "degraded",
        "services": {"database": database, "replay_queue": replay_queue},
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(response: Response) -> dict:
    # Webhooks are only accepted once the ledger database is reachable; replays can wait.
    database = _probe_ledger_database()
    if database["status"] != "up":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "database": database}
    return {"status": "ready", "database": database}


@router.get("/metrics", include_in_schema=False)
def metrics():
    return metrics_response()
