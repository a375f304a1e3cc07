import uuid

import pytest

from moneytree.services import connections as connection_store
from moneytree.services.dispatcher import (
    EnqueueError,
    SyncDispatcher,
    default_unique_period,
    dispatch_incremental_syncs,
    schedule_initial_sync,
    schedule_incremental_sync,
)
from tests.fakes import FakeRedis, RecordingTask


class TestEnqueue:
    def test_first_enqueue_claims_key_and_publishes(self, dispatcher, fake_redis, task):
        conn_id = uuid.uuid4()
        result = dispatcher.enqueue(conn_id, "incremental", {"source": "test"})

        assert result.enqueued
        assert result.key == f"sync_job:{conn_id}:incremental"
        assert fake_redis.get(result.key) == result.job_id
        assert task.calls == [{
            "args": [str(conn_id), "incremental", {"source": "test"}],
            "countdown": None,
            "task_id": result.job_id,
        }]

    def test_burst_collapses_into_one_job(self, dispatcher, task):
        conn_id = uuid.uuid4()
        results = [dispatcher.enqueue(conn_id, "incremental") for _ in range(5)]

        assert [r.enqueued for r in results] == [True, False, False, False, False]
        assert len(task.calls) == 1

    def test_modes_are_independent(self, dispatcher, task):
        conn_id = uuid.uuid4()
        assert dispatcher.enqueue(conn_id, "incremental").enqueued
        assert dispatcher.enqueue(conn_id, "initial").enqueued
        assert len(task.calls) == 2

    def test_key_expires_after_period(self, dispatcher, fake_redis):
        conn_id = uuid.uuid4()
        dispatcher.enqueue(conn_id, "incremental")
        fake_redis.expire_all()
        assert dispatcher.enqueue(conn_id, "incremental").enqueued

    def test_default_periods(self, dispatcher, fake_redis):
        conn_id = uuid.uuid4()
        inc = dispatcher.enqueue(conn_id, "incremental")
        init = dispatcher.enqueue(conn_id, "initial")
        assert fake_redis.ttls[inc.key] == default_unique_period("incremental") == 60
        assert fake_redis.ttls[init.key] == default_unique_period("initial") == 300

    def test_schedule_delay_extends_window(self, dispatcher, fake_redis, task):
        result = dispatcher.enqueue(uuid.uuid4(), "incremental", schedule_in=30, unique_period=60)
        assert task.calls[0]["countdown"] == 30
        assert fake_redis.ttls[result.key] == 90

    def test_publish_failure_releases_key(self):
        redis_client = FakeRedis()
        dispatcher = SyncDispatcher(redis_client, RecordingTask(fail_with=ConnectionError("broker down")))
        conn_id = uuid.uuid4()

        with pytest.raises(EnqueueError):
            dispatcher.enqueue(conn_id, "incremental")
        assert redis_client.store == {}


class TestScheduling:
    def test_initial_sync(self, dispatcher, connection, task):
        result = schedule_initial_sync(dispatcher, connection)
        assert result.enqueued
        assert task.calls[0]["args"][1] == "initial"
        assert task.calls[0]["args"][2]["source"] == "initial"

    def test_incremental_sync(self, dispatcher, connection, task):
        schedule_incremental_sync(dispatcher, connection, {"source": "manual"})
        assert task.calls[0]["args"] == [str(connection.id), "incremental", {"source": "manual"}]

    def test_dispatch_skips_revoked(self, db, dispatcher, task):
        active = connection_store.create_connection(db, uuid.uuid4(), uuid.uuid4())
        revoked = connection_store.create_connection(db, uuid.uuid4(), uuid.uuid4())
        connection_store.mark_connection_revoked(db, revoked.id, reason="user_request")
        db.commit()

        results = dispatch_incremental_syncs(db, dispatcher)

        assert len(results) == 1
        assert task.calls[0]["args"][0] == str(active.id)
        assert task.calls[0]["args"][2] == {"source": "scheduled"}
