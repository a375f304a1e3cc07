"""Typed outcomes of a synchronization run.

A run returns either a :class:`SyncResult` or one of the :class:`SyncFailure`
variants below; expected provider failure modes are values, not exceptions.
Every failure serializes to a ``{"type": ..., ...}`` record via ``to_record``
for storage in ``InstitutionConnection.last_sync_error``.
"""

import dataclasses
import uuid
from dataclasses import dataclass, field
from typing import ClassVar


@dataclass(frozen=True)
class SyncResult:
    connection_id: uuid.UUID
    mode: str
    accounts_synced: int
    transactions_synced: int
    accounts_cursor: str | None
    transactions_cursor: dict[str, str] | None

    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class SyncFailure:
    type: ClassVar[str] = "unexpected"
    retryable: ClassVar[bool] = False
    ok: ClassVar[bool] = False

    def to_record(self) -> dict:
        return {"type": self.type, **dataclasses.asdict(self)}


@dataclass(frozen=True)
class RateLimited(SyncFailure):
    """Provider throttled us (HTTP 429)."""

    type: ClassVar[str] = "rate_limited"
    retryable: ClassVar[bool] = True

    retry_after_seconds: int
    status: int = 429
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderFailure(SyncFailure):
    """Any other HTTP, transport, timeout or payload failure from the provider."""

    type: ClassVar[str] = "provider_error"

    kind: str  # http | transport | timeout | data | unexpected
    message: str
    status: int | None = None
    details: dict = field(default_factory=dict)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind != "data"


@dataclass(frozen=True)
class MissingAccountIdentifier(SyncFailure):
    type: ClassVar[str] = "missing_account_identifier"

    connection_id: str
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class InvalidAccountCurrency(SyncFailure):
    type: ClassVar[str] = "invalid_account_currency"

    connection_id: str
    account_external_id: str
    currency: str | None


@dataclass(frozen=True)
class MissingTransactionIdentifier(SyncFailure):
    type: ClassVar[str] = "missing_transaction_identifier"

    account_id: str
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class InvalidTransactionAmount(SyncFailure):
    """A transaction amount was missing or could not be stored exactly."""

    type: ClassVar[str] = "invalid_transaction_amount"

    account_id: str
    record_id: str
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class InvalidTransactionCurrency(SyncFailure):
    type: ClassVar[str] = "invalid_transaction_currency"

    account_id: str
    record_id: str
    currency: str | None


@dataclass(frozen=True)
class TransactionAmountMismatch(SyncFailure):
    """A known transaction came back with a different amount; never applied."""

    type: ClassVar[str] = "transaction_amount_mismatch"

    account_id: str
    record_id: str
    stored_amount: str
    received_amount: str


SyncError = (
    RateLimited
    | ProviderFailure
    | MissingAccountIdentifier
    | InvalidAccountCurrency
    | MissingTransactionIdentifier
    | InvalidTransactionAmount
    | InvalidTransactionCurrency
    | TransactionAmountMismatch
)
