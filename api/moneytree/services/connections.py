"""Connection state store: reads and narrow updates of institution connections.

Sync-state writes touch only the columns a caller names, so a sync finishing
in one session cannot clobber a metadata-only write (e.g. a revoke) made by
another. Metadata read-modify-writes lock the row first.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from moneytree.core.security import encrypt_json, generate_webhook_secret
from moneytree.models.connection import InstitutionConnection, TransactionCursors

logger = logging.getLogger(__name__)

WEBHOOK_METADATA_KEY = "provider_webhook"
DEFAULT_NONCE_RETENTION = 86_400


class ConnectionNotFound(LookupError):
    pass


class ConnectionRevoked(Exception):
    def __init__(self, connection: InstitutionConnection):
        self.connection = connection
        super().__init__(f"connection {connection.id} is revoked")


class NonceAlreadyRecorded(Exception):
    def __init__(self, nonce: str):
        self.nonce = nonce
        super().__init__(f"webhook nonce {nonce!r} already recorded")


def _coerce_id(connection_id) -> uuid.UUID | None:
    if isinstance(connection_id, uuid.UUID):
        return connection_id
    try:
        return uuid.UUID(str(connection_id))
    except (TypeError, ValueError):
        return None


# ─── Reads ─────────────────────────────────────────────────────────────────────

def get_connection(db: Session, connection_id) -> InstitutionConnection | None:
    """Load a connection fresh from the database; malformed ids resolve to None."""
    conn_id = _coerce_id(connection_id)
    if conn_id is None:
        return None
    return db.execute(
        select(InstitutionConnection)
        .where(InstitutionConnection.id == conn_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_active_connection(db: Session, connection_id) -> InstitutionConnection:
    connection = get_connection(db, connection_id)
    if connection is None:
        raise ConnectionNotFound(str(connection_id))
    if connection.is_revoked:
        raise ConnectionRevoked(connection)
    return connection


def list_connections_for_sync(db: Session) -> list[InstitutionConnection]:
    connections = db.execute(
        select(InstitutionConnection).order_by(InstitutionConnection.created_at)
    ).scalars().all()
    return [c for c in connections if not c.is_revoked]


def _lock_connection(db: Session, connection_id: uuid.UUID) -> InstitutionConnection | None:
    return db.execute(
        select(InstitutionConnection)
        .where(InstitutionConnection.id == connection_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


# ─── Lifecycle ─────────────────────────────────────────────────────────────────

def create_connection(
    db: Session,
    user_id: uuid.UUID,
    institution_id: uuid.UUID,
    credentials: dict | None = None,
    webhook_secret: str | None = None,
    provider_enrollment_id: str | None = None,
    provider_user_id: str | None = None,
) -> InstitutionConnection:
    connection = InstitutionConnection(
        user_id=user_id,
        institution_id=institution_id,
        encrypted_credentials=encrypt_json(credentials) if credentials else None,
        provider_enrollment_id=provider_enrollment_id,
        provider_user_id=provider_user_id,
        metadata_={"status": "active"},
    )
    connection.webhook_secret = webhook_secret or generate_webhook_secret()
    db.add(connection)
    db.flush()
    return connection


def _update_metadata(db: Session, connection_id, mutate) -> InstitutionConnection:
    conn_id = _coerce_id(connection_id)
    connection = _lock_connection(db, conn_id) if conn_id else None
    if connection is None:
        raise ConnectionNotFound(str(connection_id))
    metadata = dict(connection.metadata_ or {})
    connection.metadata_ = mutate(metadata)
    db.flush()
    return connection


def mark_connection_revoked(
    db: Session, connection_id, reason: str | None = None, revoked_at: datetime | None = None
) -> InstitutionConnection:
    timestamp = revoked_at or datetime.now(timezone.utc)

    def _revoke(metadata: dict) -> dict:
        metadata["status"] = "revoked"
        metadata["revoked_at"] = timestamp.isoformat()
        if reason:
            metadata["revocation_reason"] = reason
        return metadata

    connection = _update_metadata(db, connection_id, _revoke)
    logger.info("Connection %s revoked (%s)", connection.id, reason or "no reason")
    return connection


def mark_connection_active(db: Session, connection_id) -> InstitutionConnection:
    def _restore(metadata: dict) -> dict:
        metadata.pop("revoked_at", None)
        metadata.pop("revocation_reason", None)
        metadata["status"] = "active"
        return metadata

    return _update_metadata(db, connection_id, _restore)


def rotate_webhook_secret(db: Session, connection_id) -> tuple[InstitutionConnection, str]:
    connection = get_connection(db, connection_id)
    if connection is None:
        raise ConnectionNotFound(str(connection_id))
    secret = generate_webhook_secret()
    connection.webhook_secret = secret
    db.flush()
    return connection, secret


# ─── Sync state ────────────────────────────────────────────────────────────────

_SYNC_STATE_FIELDS = frozenset({
    "accounts_cursor",
    "transactions_cursor",
    "last_synced_at",
    "last_sync_error",
    "last_sync_error_at",
})


def update_sync_state(db: Session, connection: InstitutionConnection, **fields) -> InstitutionConnection:
    """Write only the given sync-state columns and refresh the instance."""
    unknown = set(fields) - _SYNC_STATE_FIELDS
    if unknown:
        raise ValueError(f"not sync state fields: {sorted(unknown)}")
    if isinstance(fields.get("transactions_cursor"), TransactionCursors):
        fields["transactions_cursor"] = fields["transactions_cursor"].encode()

    db.flush()
    db.execute(
        update(InstitutionConnection)
        .where(InstitutionConnection.id == connection.id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    db.refresh(connection)
    return connection


def merge_transaction_cursors(
    db: Session, connection: InstitutionConnection, progress: TransactionCursors
) -> TransactionCursors:
    """Lay this run's per-account cursors over the freshly stored map and persist it."""
    locked = _lock_connection(db, connection.id)
    stored = locked.transaction_cursors if locked else TransactionCursors()
    merged = stored.merge(progress)
    update_sync_state(db, connection, transactions_cursor=merged)
    return merged


# ─── Webhook nonces ────────────────────────────────────────────────────────────

def _webhook_metadata(connection: InstitutionConnection) -> dict:
    return dict((connection.metadata_ or {}).get(WEBHOOK_METADATA_KEY) or {})


def nonce_processed(connection: InstitutionConnection, nonce: str) -> bool:
    return nonce in (_webhook_metadata(connection).get("nonces") or {})


def _prune_nonces(nonces: dict, now: datetime, retention: int) -> dict:
    if retention <= 0:
        return dict(nonces)
    cutoff = now - timedelta(seconds=retention)
    kept = {}
    for nonce, recorded_at in nonces.items():
        try:
            recorded = datetime.fromisoformat(recorded_at)
        except (TypeError, ValueError):
            continue
        if recorded.tzinfo is None:
            recorded = recorded.replace(tzinfo=timezone.utc)
        if recorded >= cutoff:
            kept[nonce] = recorded_at
    return kept


def record_webhook_event(
    db: Session,
    connection: InstitutionConnection,
    nonce: str,
    event: str,
    received_at: datetime,
    retention: int = DEFAULT_NONCE_RETENTION,
) -> InstitutionConnection:
    """Record a processed nonce, pruning entries older than ``retention`` seconds.

    Raises :class:`NonceAlreadyRecorded` when a concurrent delivery recorded the
    same nonce between the caller's check and the row lock.
    """
    locked = _lock_connection(db, connection.id)
    if locked is None:
        raise ConnectionNotFound(str(connection.id))
    if nonce_processed(locked, nonce):
        raise NonceAlreadyRecorded(nonce)

    metadata = dict(locked.metadata_ or {})
    webhook_meta = _webhook_metadata(locked)
    timestamp = received_at.isoformat()

    nonces = _prune_nonces(webhook_meta.get("nonces") or {}, received_at, retention)
    nonces[nonce] = timestamp
    webhook_meta.update({"nonces": nonces, "last_event": event, "last_received_at": timestamp})
    metadata[WEBHOOK_METADATA_KEY] = webhook_meta

    locked.metadata_ = metadata
    db.flush()
    return locked


def forget_webhook_nonce(db: Session, connection: InstitutionConnection, nonce: str) -> bool:
    """Drop a recorded nonce so a redelivery of that webhook is processed again."""
    locked = _lock_connection(db, connection.id)
    if locked is None or not nonce_processed(locked, nonce):
        return False

    metadata = dict(locked.metadata_ or {})
    webhook_meta = _webhook_metadata(locked)
    nonces = dict(webhook_meta.get("nonces") or {})
    nonces.pop(nonce, None)
    webhook_meta["nonces"] = nonces
    metadata[WEBHOOK_METADATA_KEY] = webhook_meta

    locked.metadata_ = metadata
    db.flush()
    return True
