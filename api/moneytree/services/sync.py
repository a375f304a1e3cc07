"""Celery tasks running connection syncs."""

import logging

from moneytree.core.config import settings
from moneytree.core.database import SessionLocal
from moneytree.core.redis import get_redis, held_job_id, job_key, release_job_key
from moneytree.integrations.provider_client import ProviderClient
from moneytree.services import dispatcher as sync_dispatcher
from moneytree.services.connections import get_connection
from moneytree.services.sync_errors import RateLimited, SyncFailure
from moneytree.services.synchronizer import Synchronizer
from moneytree.worker import celery_app

logger = logging.getLogger(__name__)

BASE_BACKOFF_SECONDS = 15


def backoff(attempt: int) -> int:
    """Exponential backoff for the ``attempt``-th try (1-based), capped at the max snooze."""
    return min(BASE_BACKOFF_SECONDS * 2 ** (max(attempt, 1) - 1), settings.sync_max_snooze_seconds)


def retry_countdown(failure: SyncFailure, attempt: int) -> int:
    delay = backoff(attempt)
    if isinstance(failure, RateLimited):
        # Honour the provider's Retry-After but never below backoff or above the cap
        return min(max(failure.retry_after_seconds, delay), settings.sync_max_snooze_seconds)
    return delay


def _release_uniqueness(connection_id: str, mode: str, job_id: str | None) -> None:
    key = job_key(connection_id, mode)
    client = get_redis()
    if job_id and held_job_id(client, key) == job_id:
        release_job_key(client, key)


@celery_app.task(
    bind=True,
    name="moneytree.services.sync.sync_connection",
    max_retries=settings.sync_max_attempts - 1,
)
def sync_connection(self, connection_id: str, mode: str = "incremental", metadata: dict | None = None):
    """Sync one connection; provider failures are retried with backoff."""
    attempt = self.request.retries + 1
    logger.info("Syncing connection %s (%s, attempt %d)", connection_id, mode, attempt)

    db = SessionLocal()
    retrying = False
    try:
        connection = get_connection(db, connection_id)
        if connection is None:
            logger.warning("Skipping sync for unknown connection %s", connection_id)
            return {"status": "skipped", "reason": "unknown_connection"}
        if connection.is_revoked:
            logger.info("Skipping sync for revoked connection %s", connection_id)
            return {"status": "skipped", "reason": "revoked"}

        with ProviderClient.from_settings() as client:
            outcome = Synchronizer(db, client).sync(connection, mode, metadata)

        if outcome.ok:
            logger.info(
                "Connection %s synced: %d accounts, %d transactions",
                connection_id, outcome.accounts_synced, outcome.transactions_synced,
            )
            return {
                "status": "ok",
                "accounts_synced": outcome.accounts_synced,
                "transactions_synced": outcome.transactions_synced,
            }

        record = outcome.to_record()
        if not outcome.retryable:
            logger.error("Sync for connection %s failed permanently: %s", connection_id, record)
            return {"status": "failed", "error": record}
        if attempt >= settings.sync_max_attempts:
            logger.error(
                "Sync for connection %s gave up after %d attempts: %s", connection_id, attempt, record
            )
            return {"status": "failed", "error": record}

        countdown = retry_countdown(outcome, attempt)
        logger.warning(
            "Sync for connection %s failed (%s), retrying in %ds", connection_id, outcome.type, countdown
        )
        retrying = True
        raise self.retry(countdown=countdown)
    finally:
        db.close()
        if not retrying:
            _release_uniqueness(str(connection_id), mode, self.request.id)


@celery_app.task(name="moneytree.services.sync.dispatch_incremental_syncs")
def dispatch_incremental_syncs(schedule_in: int = 0):
    """Enqueue an incremental sync for every active connection."""
    logger.info("Starting scheduled incremental sync dispatch")
    db = SessionLocal()
    try:
        results = sync_dispatcher.dispatch_incremental_syncs(
            db, sync_dispatcher.SyncDispatcher.default(), schedule_in=schedule_in
        )
    finally:
        db.close()
    enqueued = sum(1 for r in results if r.enqueued)
    logger.info("Dispatched %d incremental syncs (%d already pending)", enqueued, len(results) - enqueued)
    return {"enqueued": enqueued, "skipped": len(results) - enqueued}
