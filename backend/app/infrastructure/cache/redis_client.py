from datetime import UTC, datetime

from redis import Redis

from app.core.config import settings
from app.infrastructure.observability.metrics import measure_redis


def get_redis_client() -> Redis:
    return Redis.from_url(settings.cache_redis_url, decode_responses=True)


def write_worker_heartbeat(client: Redis | None = None) -> str:
    client = client or get_redis_client()
    timestamp = datetime.now(UTC).isoformat()
    with measure_redis("worker_heartbeat_write"):
        client.set(settings.worker_heartbeat_key, timestamp, ex=settings.worker_heartbeat_ttl_seconds)
    return timestamp


def worker_is_alive(client: Redis | None = None) -> bool:
    client = client or get_redis_client()
    with measure_redis("worker_heartbeat_check"):
        return bool(client.exists(settings.worker_heartbeat_key))
