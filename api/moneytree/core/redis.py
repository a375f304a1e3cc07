import redis

from moneytree.core.config import settings

# Shared Redis client (created lazily, reused by the API and the worker)
_redis: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


# ─── Job uniqueness locks ──────────────────────────────────────────────────────

_JOB_PREFIX = "sync_job:"


def job_key(connection_id: str, mode: str) -> str:
    return f"{_JOB_PREFIX}{connection_id}:{mode}"


def claim_job_key(client: redis.Redis, key: str, job_id: str, ttl_seconds: int) -> bool:
    """Claim a uniqueness key for ``ttl_seconds``. Returns False if already held."""
    return bool(client.set(key, job_id, nx=True, ex=max(ttl_seconds, 1)))


def release_job_key(client: redis.Redis, key: str) -> None:
    client.delete(key)


def held_job_id(client: redis.Redis, key: str) -> str | None:
    """Return the job id currently holding ``key``, if any."""
    return client.get(key)
