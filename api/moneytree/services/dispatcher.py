"""Uniqueness-scoped enqueueing of connection sync jobs.

Each ``(connection_id, mode)`` pair owns a Redis key for a configurable window.
While the key is held, further enqueue requests collapse into the job that
claimed it, so bursts of webhooks or refresh clicks produce one run.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import redis
from sqlalchemy.orm import Session

from moneytree.core.config import settings
from moneytree.core.redis import claim_job_key, get_redis, job_key, release_job_key
from moneytree.models.connection import InstitutionConnection
from moneytree.services.connections import list_connections_for_sync

logger = logging.getLogger(__name__)


class EnqueueError(Exception):
    """The broker or the uniqueness store refused the job."""


class TaskLike(Protocol):
    def apply_async(self, args=None, kwargs=None, countdown=None, task_id=None, **options) -> Any: ...


@dataclass(frozen=True)
class EnqueueResult:
    enqueued: bool
    job_id: str | None
    key: str


def default_unique_period(mode: str) -> int:
    if mode == "initial":
        return settings.initial_sync_unique_period_seconds
    return settings.sync_unique_period_seconds


class SyncDispatcher:
    def __init__(self, redis_client: redis.Redis, task: TaskLike):
        self.redis = redis_client
        self.task = task

    @classmethod
    def default(cls) -> "SyncDispatcher":
        from moneytree.services.sync import sync_connection

        return cls(get_redis(), sync_connection)

    def enqueue(
        self,
        connection_id,
        mode: str = "incremental",
        metadata: dict | None = None,
        schedule_in: int = 0,
        unique_period: int | None = None,
    ) -> EnqueueResult:
        connection_id = str(connection_id)
        key = job_key(connection_id, mode)
        job_id = str(uuid.uuid4())
        period = unique_period if unique_period is not None else default_unique_period(mode)

        try:
            claimed = claim_job_key(self.redis, key, job_id, period + max(schedule_in, 0))
        except redis.RedisError as exc:
            raise EnqueueError(f"could not claim {key}: {exc}") from exc
        if not claimed:
            logger.info("Sync %s for connection %s already enqueued", mode, connection_id)
            return EnqueueResult(enqueued=False, job_id=None, key=key)

        try:
            self.task.apply_async(
                args=[connection_id, mode, metadata or {}],
                countdown=schedule_in or None,
                task_id=job_id,
            )
        except Exception as exc:
            release_job_key(self.redis, key)
            raise EnqueueError(f"could not enqueue sync for {connection_id}: {exc}") from exc

        logger.info("Enqueued %s sync %s for connection %s", mode, job_id, connection_id)
        return EnqueueResult(enqueued=True, job_id=job_id, key=key)


# ─── Scheduling helpers ────────────────────────────────────────────────────────

def schedule_initial_sync(
    dispatcher: SyncDispatcher, connection: InstitutionConnection, metadata: dict | None = None
) -> EnqueueResult:
    return dispatcher.enqueue(
        connection.id, "initial", {"source": "initial", **(metadata or {})}
    )


def schedule_incremental_sync(
    dispatcher: SyncDispatcher,
    connection: InstitutionConnection,
    metadata: dict | None = None,
    schedule_in: int = 0,
) -> EnqueueResult:
    return dispatcher.enqueue(connection.id, "incremental", metadata, schedule_in=schedule_in)


def dispatch_incremental_syncs(
    db: Session, dispatcher: SyncDispatcher, schedule_in: int = 0
) -> list[EnqueueResult]:
    """Enqueue an incremental sync for every connection that is not revoked."""
    results = []
    for connection in list_connections_for_sync(db):
        try:
            results.append(
                schedule_incremental_sync(
                    dispatcher, connection, {"source": "scheduled"}, schedule_in=schedule_in
                )
            )
        except EnqueueError:
            logger.exception("Failed to enqueue scheduled sync for connection %s", connection.id)
    return results
