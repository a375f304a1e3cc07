import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class SyncRequestResponse(BaseModel):
    status: Literal["enqueued", "already_enqueued"]
    connection_id: uuid.UUID
    mode: str
    job_id: str | None = None


class SyncStatusResponse(BaseModel):
    connection_id: uuid.UUID
    status: str
    accounts_cursor: str | None
    transactions_cursor: dict[str, str] | None
    last_synced_at: datetime | None
    last_sync_error: dict | None
    last_sync_error_at: datetime | None
    last_webhook_event: str | None = None
    last_webhook_received_at: str | None = None


class ConnectionStateResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    institution_id: uuid.UUID
    status: str
    metadata: dict


class RevokeRequest(BaseModel):
    reason: str | None = None
