"""Idempotent, incremental provider account & transaction synchronizer.

A run pages through the provider's accounts from the connection's stored
cursor, upserting each by ``(user_id, external_id)``, then pages through every
account's transactions from that account's own cursor, inserting each new
transaction by ``(account_id, external_id)``. Progress is committed at
per-account boundaries so a failed run resumes where it stopped.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from moneytree.core import audit
from moneytree.core.config import settings
from moneytree.integrations.exceptions import ProviderClientError, ProviderHTTPError
from moneytree.integrations.provider_client import Page
from moneytree.models.account import AMOUNT_SCALE, Account, Transaction
from moneytree.models.connection import InstitutionConnection, TransactionCursors
from moneytree.services import connections as connection_store
from moneytree.services.currency import is_valid_code, normalize_currency
from moneytree.services.sync_errors import (
    InvalidAccountCurrency,
    InvalidTransactionAmount,
    InvalidTransactionCurrency,
    MissingAccountIdentifier,
    MissingTransactionIdentifier,
    ProviderFailure,
    RateLimited,
    SyncFailure,
    SyncResult,
    TransactionAmountMismatch,
)

logger = logging.getLogger(__name__)

MODES = ("initial", "incremental")


class AccountSource(Protocol):
    """The slice of the provider client the synchronizer depends on."""

    def list_accounts(self, cursor: str | None = None, params: dict | None = None) -> Page: ...

    def list_transactions(
        self, account_external_id: str, cursor: str | None = None, params: dict | None = None
    ) -> Page: ...


class _RecordRejected(Exception):
    def __init__(self, failure: SyncFailure):
        self.failure = failure
        super().__init__(failure.type)


@dataclass
class _RunState:
    accounts_cursor: str | None = None
    transaction_cursors: TransactionCursors = field(default_factory=TransactionCursors)
    accounts_synced: int = 0
    transactions_synced: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Payload helpers ───────────────────────────────────────────────────────────

def _dig(payload: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(payload, dict):
            return None
        payload = payload.get(key)
    return payload


def _first(payload: dict, *paths: tuple[str, ...]) -> Any:
    for path in paths:
        value = _dig(payload, *path)
        if value is not None:
            return value
    return None


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None
    return result if result.is_finite() else None


def fits_amount_scale(amount: Decimal) -> bool:
    """True when ``amount`` is stored without rounding (trailing zeros are fine)."""
    return amount.normalize().as_tuple().exponent >= -AMOUNT_SCALE


def parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_retry_after(headers: dict[str, str], now: datetime, default: int) -> int:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP date)."""
    value = next((v for k, v in headers.items() if k.lower() == "retry-after"), None)
    if value is None:
        return default
    value = str(value).strip()
    if value.isdigit():
        return int(value)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(int((retry_at - now).total_seconds()), 0)


def _sanitize(payload: Any) -> dict:
    if not isinstance(payload, dict):
        return {}
    return {
        k: payload[k]
        for k in ("id", "name", "type", "currency", "amount", "status")
        if payload.get(k) is not None
    }


def classify_client_error(
    exc: ProviderClientError, now: datetime, default_retry_after: int
) -> RateLimited | ProviderFailure:
    if isinstance(exc, ProviderHTTPError):
        if exc.status == 429:
            return RateLimited(
                retry_after_seconds=parse_retry_after(exc.headers, now, default_retry_after),
                details=dict(exc.details),
            )
        return ProviderFailure(
            kind="http", message=str(exc), status=exc.status, details=dict(exc.details)
        )
    return ProviderFailure(kind=exc.kind, message=str(exc), details=dict(exc.details))


# ─── Synchronizer ──────────────────────────────────────────────────────────────

class Synchronizer:
    def __init__(
        self,
        db: Session,
        client: AccountSource,
        clock: Callable[[], datetime] = _utcnow,
        default_retry_after: int | None = None,
    ):
        self.db = db
        self.client = client
        self.clock = clock
        self.default_retry_after = (
            default_retry_after
            if default_retry_after is not None
            else settings.sync_default_retry_after_seconds
        )
        self._accounts: dict[str, Account] = {}
        self._transactions: dict[tuple, Transaction] = {}

    def sync(
        self,
        connection: InstitutionConnection,
        mode: str = "incremental",
        metadata: dict | None = None,
    ) -> SyncResult | SyncFailure:
        """Run one sync for ``connection``. Provider failures come back as values."""
        if mode not in MODES:
            raise ValueError(f"unknown sync mode {mode!r}")

        self.db.refresh(connection)
        self._accounts.clear()
        self._transactions.clear()
        run = _RunState()
        audit_meta = {
            **(metadata or {}),
            "connection_id": connection.id,
            "user_id": connection.user_id,
            "institution_id": connection.institution_id,
            "mode": mode,
        }
        started = time.monotonic()
        audit.log("sync_started", audit_meta)

        try:
            self._sync_accounts(connection, mode, run)
            self._sync_transactions(connection, mode, run)
        except ProviderClientError as exc:
            failure = classify_client_error(exc, self.clock(), self.default_retry_after)
            return self._finalize_failure(connection, run, failure, audit_meta, started)
        except _RecordRejected as exc:
            return self._finalize_failure(connection, run, exc.failure, audit_meta, started)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Database error while syncing connection %s", connection.id)
            raise

        return self._finalize_success(connection, mode, run, audit_meta, started)

    # ── Account phase ──────────────────────────────────────────────────────

    def _sync_accounts(self, connection: InstitutionConnection, mode: str, run: _RunState) -> None:
        cursor = None if mode == "initial" else connection.accounts_cursor
        run.accounts_cursor = cursor
        params = {
            "teller_user_id": connection.provider_user_id,
            "enrollment_id": connection.provider_enrollment_id,
        }
        now = self.clock()

        while True:
            page = self.client.list_accounts(cursor=cursor, params=params)
            for record in page.data:
                self._upsert_account(connection, record, now)
                run.accounts_synced += 1
            self.db.flush()

            if page.next_cursor is None:
                break
            cursor = page.next_cursor
            run.accounts_cursor = cursor

        self.db.commit()
        logger.debug(
            "Connection %s: %d accounts synced, cursor=%s",
            connection.id, run.accounts_synced, run.accounts_cursor,
        )

    def _upsert_account(self, connection: InstitutionConnection, record: dict, now: datetime) -> Account:
        external_id = record.get("id") if isinstance(record, dict) else None
        if not isinstance(external_id, str) or not external_id:
            raise _RecordRejected(
                MissingAccountIdentifier(connection_id=str(connection.id), payload=_sanitize(record))
            )

        currency = normalize_currency(_first(record, ("currency",), ("balances", "currency")))
        if not is_valid_code(currency):
            raise _RecordRejected(
                InvalidAccountCurrency(
                    connection_id=str(connection.id),
                    account_external_id=external_id,
                    currency=currency,
                )
            )

        attrs = {
            "name": _first(record, ("name",), ("display_name",), ("type",)) or "Account",
            "type": record.get("type") or "account",
            "subtype": record.get("subtype"),
            "currency": currency,
            "current_balance": to_decimal(_dig(record, "balances", "current")),
            "available_balance": to_decimal(_dig(record, "balances", "available")),
            "credit_limit": to_decimal(_dig(record, "balances", "limit")),
            "institution_id": connection.institution_id,
            "connection_id": connection.id,
            "last_synced_at": now,
        }

        account = self._accounts.get(external_id)
        if account is None:
            account = self.db.execute(
                select(Account).where(
                    Account.user_id == connection.user_id,
                    Account.external_id == external_id,
                )
            ).scalar_one_or_none()

        if account is None:
            account = Account(user_id=connection.user_id, external_id=external_id, **attrs)
            self.db.add(account)
        else:
            for key, value in attrs.items():
                setattr(account, key, value)

        self._accounts[external_id] = account
        return account

    # ── Transaction phase ──────────────────────────────────────────────────

    def _sync_transactions(self, connection: InstitutionConnection, mode: str, run: _RunState) -> None:
        stored = connection.transaction_cursors
        accounts = self.db.execute(
            select(Account)
            .where(Account.connection_id == connection.id)
            .order_by(Account.external_id)
        ).scalars().all()

        for account in accounts:
            cursor = None if mode == "initial" else stored.get(account.external_id)
            start = cursor
            processed = 0

            while True:
                page = self.client.list_transactions(account.external_id, cursor=cursor)
                for record in page.data:
                    self._upsert_transaction(account, record)
                    processed += 1
                    run.transactions_synced += 1
                self.db.flush()

                if page.next_cursor is None:
                    break
                cursor = page.next_cursor
                run.transaction_cursors.set(account.external_id, cursor)

            run.transaction_cursors.set(account.external_id, cursor)
            connection_store.merge_transaction_cursors(self.db, connection, run.transaction_cursors)
            self.db.commit()
            logger.debug(
                "Account %s: %d transactions from cursor %s to %s",
                account.external_id, processed, start, cursor,
            )

    def _upsert_transaction(self, account: Account, record: dict) -> Transaction:
        account_ref = str(account.id)
        external_id = record.get("id") if isinstance(record, dict) else None
        if not isinstance(external_id, str) or not external_id:
            raise _RecordRejected(
                MissingTransactionIdentifier(account_id=account_ref, payload=_sanitize(record))
            )

        amount = to_decimal(record.get("amount"))
        if amount is None or not fits_amount_scale(amount):
            raise _RecordRejected(
                InvalidTransactionAmount(
                    account_id=account_ref, record_id=external_id, payload=_sanitize(record)
                )
            )

        currency = normalize_currency(record.get("currency")) or account.currency
        if not is_valid_code(currency):
            raise _RecordRejected(
                InvalidTransactionCurrency(account_id=account_ref, record_id=external_id, currency=currency)
            )

        key = (account.id, external_id)
        existing = self._transactions.get(key)
        if existing is None:
            existing = self.db.execute(
                select(Transaction).where(
                    Transaction.account_id == account.id,
                    Transaction.external_id == external_id,
                )
            ).scalar_one_or_none()

        if existing is not None:
            # Posted transactions are immutable; a changed amount is an upstream logic error
            if existing.amount != amount:
                raise _RecordRejected(
                    TransactionAmountMismatch(
                        account_id=account_ref,
                        record_id=external_id,
                        stored_amount=str(existing.amount),
                        received_amount=str(amount),
                    )
                )
            self._transactions[key] = existing
            return existing

        posted = _first(record, ("posted_at",), ("date_posted",), ("date",))
        settled = _first(record, ("settled_at",), ("settled_at", "date"), ("date_settled",))
        txn = Transaction(
            account_id=account.id,
            external_id=external_id,
            amount=amount,
            currency=currency,
            posted_at=parse_datetime(posted) or self.clock(),
            settled_at=parse_datetime(settled),
            description=(
                _first(record, ("description",), ("details", "description"), ("name",))
                or "Transaction"
            )[:500],
            status=record.get("status") or "posted",
            type=record.get("type"),
            category=_first(record, ("category",), ("details", "category")),
            merchant_name=_first(record, ("merchant_name",), ("details", "counterparty", "name")),
        )
        self.db.add(txn)
        self._transactions[key] = txn
        return txn

    # ── Finalization ───────────────────────────────────────────────────────

    def _finalize_success(
        self,
        connection: InstitutionConnection,
        mode: str,
        run: _RunState,
        audit_meta: dict,
        started: float,
    ) -> SyncResult:
        now = self.clock()
        fields = {
            "transactions_cursor": connection_store.merge_transaction_cursors(
                self.db, connection, run.transaction_cursors
            ),
            "last_synced_at": now,
            "last_sync_error": None,
            "last_sync_error_at": None,
        }
        if run.accounts_cursor is not None:
            fields["accounts_cursor"] = run.accounts_cursor
        connection_store.update_sync_state(self.db, connection, **fields)
        self.db.commit()

        result = SyncResult(
            connection_id=connection.id,
            mode=mode,
            accounts_synced=run.accounts_synced,
            transactions_synced=run.transactions_synced,
            accounts_cursor=connection.accounts_cursor,
            transactions_cursor=connection.transaction_cursors.as_dict(),
        )
        audit.log("sync_succeeded", {
            **audit_meta,
            "accounts_synced": result.accounts_synced,
            "transactions_synced": result.transactions_synced,
            "duration_ms": int((time.monotonic() - started) * 1000),
        })
        return result

    def _finalize_failure(
        self,
        connection: InstitutionConnection,
        run: _RunState,
        failure: SyncFailure,
        audit_meta: dict,
        started: float,
    ) -> SyncFailure:
        # Rows flushed before the failure and cursors of fully consumed pages stay
        fields = {
            "transactions_cursor": connection_store.merge_transaction_cursors(
                self.db, connection, run.transaction_cursors
            ),
            "last_sync_error": failure.to_record(),
            "last_sync_error_at": self.clock(),
        }
        if run.accounts_cursor is not None:
            fields["accounts_cursor"] = run.accounts_cursor
        connection_store.update_sync_state(self.db, connection, **fields)
        self.db.commit()

        audit.log(
            "sync_failed",
            {
                **audit_meta,
                "error": failure.to_record(),
                "accounts_synced": run.accounts_synced,
                "transactions_synced": run.transactions_synced,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
            level=logging.WARNING,
        )
        return failure
