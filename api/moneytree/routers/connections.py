from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from moneytree.core import audit
from moneytree.core.database import get_db
from moneytree.core.deps import get_dispatcher, require_operator
from moneytree.models.connection import InstitutionConnection
from moneytree.schemas.sync import (
    ConnectionStateResponse,
    RevokeRequest,
    SyncRequestResponse,
    SyncStatusResponse,
)
from moneytree.services import connections as connection_store
from moneytree.services.connections import ConnectionNotFound, ConnectionRevoked
from moneytree.services.dispatcher import EnqueueError, SyncDispatcher

router = APIRouter(
    prefix="/connections",
    tags=["connections"],
    dependencies=[Depends(require_operator)],
)


def _load(db: Session, connection_id: str) -> InstitutionConnection:
    connection = connection_store.get_connection(db, connection_id)
    if not connection:
        raise HTTPException(status_code=404, detail="Connection not found")
    return connection


def _state(connection: InstitutionConnection) -> ConnectionStateResponse:
    return ConnectionStateResponse(
        id=connection.id,
        user_id=connection.user_id,
        institution_id=connection.institution_id,
        status="revoked" if connection.is_revoked else connection.status,
        metadata={
            k: v for k, v in (connection.metadata_ or {}).items()
            if k != connection_store.WEBHOOK_METADATA_KEY
        },
    )


@router.post("/{connection_id}/sync", response_model=SyncRequestResponse, status_code=202)
def request_sync(
    connection_id: str,
    mode: Literal["incremental", "initial"] = Query("incremental"),
    db: Session = Depends(get_db),
    dispatcher: SyncDispatcher = Depends(get_dispatcher),
):
    """Enqueue a sync for one connection; collapses into an already pending job."""
    try:
        connection = connection_store.get_active_connection(db, connection_id)
    except ConnectionNotFound:
        raise HTTPException(status_code=404, detail="Connection not found")
    except ConnectionRevoked:
        raise HTTPException(status_code=409, detail="Connection is revoked")

    try:
        result = dispatcher.enqueue(connection.id, mode, {"source": "operator"})
    except EnqueueError:
        raise HTTPException(status_code=503, detail="Failed to enqueue sync")

    audit.log("sync_requested", {
        "connection_id": connection.id, "mode": mode, "enqueued": result.enqueued,
    })
    return SyncRequestResponse(
        status="enqueued" if result.enqueued else "already_enqueued",
        connection_id=connection.id,
        mode=mode,
        job_id=result.job_id,
    )


@router.get("/{connection_id}/sync-status", response_model=SyncStatusResponse)
def sync_status(connection_id: str, db: Session = Depends(get_db)):
    connection = _load(db, connection_id)
    webhook_meta = (connection.metadata_ or {}).get(connection_store.WEBHOOK_METADATA_KEY) or {}
    return SyncStatusResponse(
        connection_id=connection.id,
        status="revoked" if connection.is_revoked else connection.status,
        accounts_cursor=connection.accounts_cursor,
        transactions_cursor=connection.transaction_cursors.as_dict(),
        last_synced_at=connection.last_synced_at,
        last_sync_error=connection.last_sync_error,
        last_sync_error_at=connection.last_sync_error_at,
        last_webhook_event=webhook_meta.get("last_event"),
        last_webhook_received_at=webhook_meta.get("last_received_at"),
    )


@router.post("/{connection_id}/revoke", response_model=ConnectionStateResponse)
def revoke_connection(
    connection_id: str,
    payload: RevokeRequest | None = None,
    db: Session = Depends(get_db),
):
    try:
        connection = connection_store.mark_connection_revoked(
            db, connection_id, reason=payload.reason if payload else None
        )
    except ConnectionNotFound:
        raise HTTPException(status_code=404, detail="Connection not found")
    db.commit()
    audit.log("connection_revoked", {"connection_id": connection.id})
    return _state(connection)


@router.post("/{connection_id}/restore", response_model=ConnectionStateResponse)
def restore_connection(connection_id: str, db: Session = Depends(get_db)):
    try:
        connection = connection_store.mark_connection_active(db, connection_id)
    except ConnectionNotFound:
        raise HTTPException(status_code=404, detail="Connection not found")
    db.commit()
    audit.log("connection_restored", {"connection_id": connection.id})
    return _state(connection)
