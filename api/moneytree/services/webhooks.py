"""Signed provider webhook verification and sync triggering.

Webhooks carry a ``<t>.<raw body>`` HMAC-SHA256 signature in a
``t=<unix>,v1=<hex>`` header. Signatures are checked against the shared secret
before anything touches the database. Verified events are deduplicated by
nonce against the connection's metadata and turned into an incremental sync.
"""

import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from moneytree.core import audit
from moneytree.core.config import settings
from moneytree.core.security import constant_time_equals, sign_payload
from moneytree.services import connections as connection_store
from moneytree.services.connections import ConnectionNotFound, ConnectionRevoked, NonceAlreadyRecorded
from moneytree.services.dispatcher import EnqueueError, SyncDispatcher

logger = logging.getLogger(__name__)

WEBHOOK_SOURCE = "provider_webhook"


class IgnoreReason(str, enum.Enum):
    DUPLICATE = "duplicate"
    UNKNOWN_CONNECTION = "unknown_connection"
    REVOKED = "revoked"
    ALREADY_ENQUEUED = "already_enqueued"


@dataclass(frozen=True)
class WebhookConfig:
    secret: str
    timestamp_tolerance: int = 300
    nonce_retention: int = 86_400
    unique_period: int = 60
    signature_header: str = "teller-signature"

    @classmethod
    def from_settings(cls) -> "WebhookConfig":
        return cls(
            secret=settings.provider_webhook_secret,
            timestamp_tolerance=settings.webhook_timestamp_tolerance_seconds,
            nonce_retention=settings.webhook_nonce_retention_seconds,
            unique_period=settings.sync_unique_period_seconds,
            signature_header=settings.provider_signature_header,
        )


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    body: dict

    @classmethod
    def ok(cls) -> "WebhookOutcome":
        return cls(200, {"status": "ok"})

    @classmethod
    def ignored(cls, reason: IgnoreReason) -> "WebhookOutcome":
        return cls(200, {"status": "ignored", "reason": reason.value})

    @classmethod
    def error(cls, message: str, status_code: int = 400) -> "WebhookOutcome":
        return cls(status_code, {"error": message})


class _Rejected(Exception):
    def __init__(self, message: str, audit_event: str):
        self.message = message
        self.audit_event = audit_event
        super().__init__(message)


def parse_signature_header(header: str | None) -> tuple[int, list[str]] | None:
    """Split ``t=<unix>,v1=<hex>[,v1=...]`` into the timestamp and candidate signatures."""
    if not header:
        return None
    timestamp = None
    signatures = []
    for part in header.split(","):
        name, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if name == "t":
            try:
                timestamp = int(value.strip())
            except ValueError:
                return None
        elif name == "v1":
            signatures.append(value.strip().lower())
    if timestamp is None or not signatures:
        return None
    return timestamp, signatures


def _required_string(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise _Rejected(f"missing {key.removesuffix('_id')}", "webhook_invalid_payload")
    return value


class WebhookIngress:
    def __init__(self, db: Session, dispatcher: SyncDispatcher, config: WebhookConfig | None = None):
        self.db = db
        self.dispatcher = dispatcher
        self.config = config or WebhookConfig.from_settings()

    def handle(
        self,
        raw_body: bytes,
        signature_header: str | None,
        now: datetime | None = None,
        client_ip: str | None = None,
    ) -> WebhookOutcome:
        now = now or datetime.now(timezone.utc)
        base_meta = {"source": WEBHOOK_SOURCE, "remote_ip": client_ip}
        try:
            timestamp, payload = self._authenticate(raw_body, signature_header, now)
            nonce = _required_string(payload, "nonce")
            event = _required_string(payload, "event")
            connection_id = _required_string(payload, "connection_id")
        except _Rejected as exc:
            audit.log(exc.audit_event, base_meta, level=logging.WARNING)
            return WebhookOutcome.error(exc.message)

        meta = {**base_meta, "connection_id": connection_id, "event": event, "nonce": nonce}
        received_at = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        return self._process(connection_id, nonce, event, received_at, meta)

    # ── Verification (no database access) ──────────────────────────────────

    def _authenticate(self, raw_body: bytes, header: str | None, now: datetime) -> tuple[int, dict]:
        if not raw_body:
            raise _Rejected("missing request body", "webhook_invalid_payload")

        parsed = parse_signature_header(header)
        if parsed is None:
            raise _Rejected("invalid signature", "webhook_signature_invalid")
        timestamp, signatures = parsed

        if now.timestamp() - timestamp > self.config.timestamp_tolerance:
            raise _Rejected("stale signature", "webhook_signature_invalid")

        if not self.config.secret:
            logger.error("Webhook secret is not configured; rejecting webhook")
            raise _Rejected("invalid signature", "webhook_signature_invalid")
        expected = sign_payload(self.config.secret, timestamp, raw_body)
        if not any(constant_time_equals(sig, expected) for sig in signatures):
            raise _Rejected("invalid signature", "webhook_signature_invalid")

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError):
            raise _Rejected("invalid payload", "webhook_invalid_payload") from None
        if not isinstance(payload, dict):
            raise _Rejected("invalid payload", "webhook_invalid_payload")
        return timestamp, payload

    # ── Processing ─────────────────────────────────────────────────────────

    def _process(
        self, connection_id: str, nonce: str, event: str, received_at: datetime, meta: dict
    ) -> WebhookOutcome:
        try:
            connection = connection_store.get_active_connection(self.db, connection_id)
        except ConnectionNotFound:
            audit.log("webhook_unknown_connection", meta)
            return WebhookOutcome.ignored(IgnoreReason.UNKNOWN_CONNECTION)
        except ConnectionRevoked:
            audit.log("webhook_revoked_connection", meta)
            return WebhookOutcome.ignored(IgnoreReason.REVOKED)

        audit.log("webhook_received", meta)
        if connection_store.nonce_processed(connection, nonce):
            audit.log("webhook_replayed", meta)
            return WebhookOutcome.ignored(IgnoreReason.DUPLICATE)

        try:
            connection_store.record_webhook_event(
                self.db, connection, nonce, event, received_at, retention=self.config.nonce_retention
            )
            self.db.commit()
        except NonceAlreadyRecorded:
            self.db.rollback()
            audit.log("webhook_replayed", meta)
            return WebhookOutcome.ignored(IgnoreReason.DUPLICATE)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to record webhook for connection %s", connection_id)
            audit.log("webhook_record_failed", {**meta, "error": repr(exc)}, level=logging.ERROR)
            return WebhookOutcome.error("failed to record webhook", 500)

        try:
            result = self.dispatcher.enqueue(
                connection.id,
                "incremental",
                {"source": WEBHOOK_SOURCE, "event": event, "connection_id": str(connection.id)},
                unique_period=self.config.unique_period,
            )
        except EnqueueError as exc:
            audit.log("webhook_sync_failed", {**meta, "error": str(exc)}, level=logging.ERROR)
            self._forget_nonce(connection, nonce)
            return WebhookOutcome.error("failed to enqueue sync", 500)

        if not result.enqueued:
            audit.log("webhook_duplicate_job", meta)
            return WebhookOutcome.ignored(IgnoreReason.ALREADY_ENQUEUED)

        audit.log("webhook_processed", {**meta, "job_id": result.job_id})
        return WebhookOutcome.ok()

    def _forget_nonce(self, connection, nonce: str) -> None:
        # Lets the provider's redelivery of an unqueued webhook through again
        try:
            connection_store.forget_webhook_nonce(self.db, connection, nonce)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to release webhook nonce for connection %s", connection.id)
