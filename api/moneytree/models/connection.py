import json
import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from moneytree.core.database import Base
from moneytree.core.security import decrypt_value, encrypt_value, hash_secret

JSONType = JSON().with_variant(JSONB(), "postgresql")

# Key holding a pre-map scalar cursor that applies to every account.
LEGACY_CURSOR_KEY = "__legacy__"


class TransactionCursors:
    """Per-account transaction cursors, iterated in sorted key order.

    Serialized as a JSON object. A stored value that is not a JSON object is a
    legacy single cursor; it is used as a fallback for accounts without their
    own entry and dropped on the next encode.
    """

    def __init__(self, cursors: dict[str, str | None] | None = None, legacy: str | None = None):
        self._cursors: dict[str, str | None] = {}
        self.legacy = legacy
        for key, value in (cursors or {}).items():
            self.set(key, value)

    @classmethod
    def decode(cls, raw: str | None) -> "TransactionCursors":
        if raw is None or not raw.strip():
            return cls()
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return cls(legacy=raw)
        if not isinstance(decoded, dict):
            return cls(legacy=raw)
        legacy = decoded.pop(LEGACY_CURSOR_KEY, None)
        return cls(
            {str(k): (v if isinstance(v, str) else None) for k, v in decoded.items()},
            legacy=legacy if isinstance(legacy, str) else None,
        )

    def encode(self) -> str | None:
        present = self.as_dict()
        if not present:
            return None
        return json.dumps(present, sort_keys=True)

    def get(self, account_key: str) -> str | None:
        if account_key in self._cursors and self._cursors[account_key] is not None:
            return self._cursors[account_key]
        return self.legacy

    def set(self, account_key: str | None, cursor: str | None) -> None:
        if account_key is None:
            return
        self._cursors[str(account_key)] = cursor

    def merge(self, other: "TransactionCursors") -> "TransactionCursors":
        """Return a new map with ``other``'s entries laid over this one.

        A ``None`` in ``other`` never erases a cursor already recorded here.
        """
        merged = TransactionCursors(dict(self._cursors))
        for key, value in other.items():
            if value is not None or key not in merged:
                merged.set(key, value)
        return merged

    def as_dict(self) -> dict[str, str] | None:
        present = {k: v for k, v in self.items() if v is not None}
        return present or None

    def items(self):
        return sorted(self._cursors.items())

    def keys(self) -> list[str]:
        return sorted(self._cursors)

    def __contains__(self, key: str) -> bool:
        return key in self._cursors

    def __eq__(self, other) -> bool:
        if isinstance(other, TransactionCursors):
            return self.as_dict() == other.as_dict()
        return NotImplemented

    def __repr__(self) -> str:
        return f"TransactionCursors({self.as_dict()!r})"


class InstitutionConnection(Base):
    """One user's authenticated link to an institution through the data provider."""
    __tablename__ = "institution_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "institution_id", name="uq_connections_user_institution"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    institution_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)

    encrypted_credentials: Mapped[str | None] = mapped_column(Text)
    provider_enrollment_id: Mapped[str | None] = mapped_column(String(120), unique=True)
    provider_user_id: Mapped[str | None] = mapped_column(String(120))

    # Sync state
    accounts_cursor: Mapped[str | None] = mapped_column(Text)
    transactions_cursor: Mapped[str | None] = mapped_column(Text)  # JSON object
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_error: Mapped[dict | None] = mapped_column(JSONType)
    last_sync_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Webhooks
    encrypted_webhook_secret: Mapped[str | None] = mapped_column("webhook_secret", Text)
    webhook_secret_hash: Mapped[str | None] = mapped_column(String(64), index=True)

    # status / revocation / webhook nonce registry
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    accounts: Mapped[list["Account"]] = relationship(  # noqa: F821
        back_populates="connection", order_by="Account.external_id"
    )

    @property
    def webhook_secret(self) -> str | None:
        if not self.encrypted_webhook_secret:
            return None
        return decrypt_value(self.encrypted_webhook_secret)

    @webhook_secret.setter
    def webhook_secret(self, secret: str | None) -> None:
        if secret is not None and not secret:
            raise ValueError("webhook secret must be a non-empty string")
        self.encrypted_webhook_secret = encrypt_value(secret) if secret else None
        self.webhook_secret_hash = hash_secret(secret) if secret else None

    @property
    def transaction_cursors(self) -> TransactionCursors:
        return TransactionCursors.decode(self.transactions_cursor)

    @property
    def status(self) -> str:
        return (self.metadata_ or {}).get("status", "active")

    @property
    def is_revoked(self) -> bool:
        metadata = self.metadata_ or {}
        return metadata.get("status") == "revoked" or "revoked_at" in metadata
