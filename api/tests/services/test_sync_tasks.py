"""
Celery task tests. The task body runs in-process with the session and
provider client patched; ``retry`` is mocked to capture the countdown.
"""
from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import Retry

from moneytree.integrations.provider_client import Page
from moneytree.services import connections as connection_store
from moneytree.services import sync as sync_tasks
from moneytree.services.sync_errors import ProviderFailure, RateLimited
from tests.fakes import rate_limited_error, success_client, transaction_payload


class _ClientContext:
    def __init__(self, client):
        self.client = client

    def __enter__(self):
        return self.client

    def __exit__(self, *exc_info):
        return False


@pytest.fixture
def run_task(db, fake_redis):
    """Run ``sync_connection`` synchronously against the test session."""

    def _run(connection_id, client=None, mode="incremental", retries=0):
        provider = MagicMock()
        provider.from_settings.return_value = _ClientContext(client or success_client())
        with patch.object(sync_tasks, "SessionLocal", return_value=db), \
                patch.object(sync_tasks, "ProviderClient", provider), \
                patch.object(sync_tasks, "get_redis", return_value=fake_redis), \
                patch.object(sync_tasks.sync_connection, "retry", side_effect=Retry("retry")) as retry:
            sync_tasks.sync_connection.push_request(retries=retries, id="job-1")
            try:
                try:
                    result = sync_tasks.sync_connection.run(str(connection_id), mode, {})
                except Retry:
                    result = None
            finally:
                sync_tasks.sync_connection.pop_request()
        return result, retry

    return _run


class TestBackoff:
    def test_exponential_and_capped(self):
        assert [sync_tasks.backoff(n) for n in (1, 2, 3, 4, 5, 6)] == [15, 30, 60, 120, 240, 300]

    def test_rate_limit_honours_retry_after(self):
        assert sync_tasks.retry_countdown(RateLimited(retry_after_seconds=45), 1) == 45

    def test_rate_limit_never_below_backoff(self):
        assert sync_tasks.retry_countdown(RateLimited(retry_after_seconds=5), 3) == 60

    def test_rate_limit_capped(self):
        assert sync_tasks.retry_countdown(RateLimited(retry_after_seconds=3600), 1) == 300

    def test_other_failures_use_backoff(self):
        failure = ProviderFailure(kind="transport", message="reset")
        assert sync_tasks.retry_countdown(failure, 2) == 30


class TestSyncConnectionTask:
    def test_success(self, run_task, connection):
        result, retry = run_task(connection.id)
        assert result == {"status": "ok", "accounts_synced": 2, "transactions_synced": 3}
        retry.assert_not_called()

    def test_unknown_connection_skipped(self, run_task):
        result, _ = run_task("7d1c3c4e-0000-4000-8000-000000000000")
        assert result == {"status": "skipped", "reason": "unknown_connection"}

    def test_revoked_connection_skipped(self, db, run_task, connection):
        connection_store.mark_connection_revoked(db, connection.id)
        db.commit()
        result, _ = run_task(connection.id)
        assert result == {"status": "skipped", "reason": "revoked"}

    def test_rate_limit_snoozes(self, run_task, connection):
        client = success_client()
        client.transactions["acc_alpha"][None] = rate_limited_error("45")

        result, retry = run_task(connection.id, client)

        assert result is None
        retry.assert_called_once_with(countdown=45)

    def test_non_retryable_failure_completes(self, run_task, connection):
        client = success_client()
        client.transactions["acc_alpha"][None] = Page([transaction_payload("txn_bad", "not-a-number")])

        result, retry = run_task(connection.id, client)

        assert result["status"] == "failed"
        assert result["error"]["type"] == "invalid_transaction_amount"
        retry.assert_not_called()

    def test_gives_up_after_max_attempts(self, run_task, connection):
        client = success_client()
        client.transactions["acc_alpha"][None] = rate_limited_error()

        result, retry = run_task(connection.id, client, retries=4)

        assert result["status"] == "failed"
        retry.assert_not_called()

    def test_releases_uniqueness_key_when_done(self, run_task, connection, fake_redis):
        key = f"sync_job:{connection.id}:incremental"
        fake_redis.set(key, "job-1")
        run_task(connection.id)
        assert fake_redis.get(key) is None

    def test_keeps_uniqueness_key_while_retrying(self, run_task, connection, fake_redis):
        key = f"sync_job:{connection.id}:incremental"
        fake_redis.set(key, "job-1")
        client = success_client()
        client.transactions["acc_alpha"][None] = rate_limited_error()

        run_task(connection.id, client)
        assert fake_redis.get(key) == "job-1"
