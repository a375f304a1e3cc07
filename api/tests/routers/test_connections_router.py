import uuid
from datetime import datetime, timezone

from moneytree.services import connections as connection_store

AUTH = {"Authorization": "Bearer operator-token"}


class TestOperatorAuth:
    def test_missing_token(self, client, connection):
        response = client.get(f"/api/v1/connections/{connection.id}/sync-status")
        assert response.status_code == 401

    def test_wrong_token(self, client, connection):
        response = client.get(
            f"/api/v1/connections/{connection.id}/sync-status",
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401


class TestRequestSync:
    def test_enqueues_incremental(self, client, connection, task):
        response = client.post(f"/api/v1/connections/{connection.id}/sync", headers=AUTH)
        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "enqueued"
        assert body["mode"] == "incremental"
        assert task.calls[0]["args"][2] == {"source": "operator"}

    def test_second_request_collapses(self, client, connection, task):
        client.post(f"/api/v1/connections/{connection.id}/sync?mode=initial", headers=AUTH)
        response = client.post(f"/api/v1/connections/{connection.id}/sync?mode=initial", headers=AUTH)
        assert response.json()["status"] == "already_enqueued"
        assert len(task.calls) == 1

    def test_invalid_mode(self, client, connection):
        response = client.post(f"/api/v1/connections/{connection.id}/sync?mode=full", headers=AUTH)
        assert response.status_code == 422

    def test_unknown_connection(self, client):
        response = client.post(f"/api/v1/connections/{uuid.uuid4()}/sync", headers=AUTH)
        assert response.status_code == 404

    def test_revoked_connection(self, client, db, connection, task):
        connection_store.mark_connection_revoked(db, connection.id)
        db.commit()
        response = client.post(f"/api/v1/connections/{connection.id}/sync", headers=AUTH)
        assert response.status_code == 409
        assert task.calls == []


class TestSyncStatus:
    def test_reports_state(self, client, db, connection):
        connection_store.update_sync_state(
            db,
            connection,
            accounts_cursor="acc-c1",
            transactions_cursor='{"acc_alpha": "alpha-c1"}',
            last_synced_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )
        db.commit()

        response = client.get(f"/api/v1/connections/{connection.id}/sync-status", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "active"
        assert body["accounts_cursor"] == "acc-c1"
        assert body["transactions_cursor"] == {"acc_alpha": "alpha-c1"}
        assert body["last_sync_error"] is None

    def test_unknown(self, client):
        response = client.get(f"/api/v1/connections/{uuid.uuid4()}/sync-status", headers=AUTH)
        assert response.status_code == 404


class TestRevokeRestore:
    def test_revoke_then_restore(self, client, connection):
        response = client.post(
            f"/api/v1/connections/{connection.id}/revoke",
            json={"reason": "user_request"},
            headers=AUTH,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "revoked"
        assert response.json()["metadata"]["revocation_reason"] == "user_request"

        response = client.post(f"/api/v1/connections/{connection.id}/restore", headers=AUTH)
        assert response.json()["status"] == "active"

    def test_revoke_unknown(self, client):
        response = client.post(f"/api/v1/connections/{uuid.uuid4()}/revoke", headers=AUTH)
        assert response.status_code == 404
