from datetime import datetime, timedelta, timezone

from moneytree.services import connections as connection_store

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_health_db(client):
    response = client.get("/health/db")
    assert response.json() == {"status": "ok", "database": "connected"}


def test_health_sync_ok(client, connection):
    response = client.get("/health/sync")
    assert response.json() == {"status": "ok", "connections": 1, "failing_connections": 0}


def test_health_sync_degraded(client, db, connection):
    connection_store.update_sync_state(
        db,
        connection,
        last_synced_at=NOW - timedelta(hours=1),
        last_sync_error={"type": "rate_limited", "retry_after_seconds": 30},
        last_sync_error_at=NOW,
    )
    db.commit()

    response = client.get("/health/sync")
    assert response.json()["status"] == "degraded"
    assert response.json()["failing_connections"] == 1
