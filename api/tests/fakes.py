"""In-memory stand-ins for Redis, the Celery task and the provider client."""

from moneytree.integrations.exceptions import ProviderHTTPError
from moneytree.integrations.provider_client import Page


class FakeRedis:
    """Implements the handful of Redis commands the dispatcher uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def get(self, key):
        return self.store.get(key)

    def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    def expire_all(self):
        self.store.clear()
        self.ttls.clear()


class RecordingTask:
    """Records ``apply_async`` calls instead of publishing to a broker."""

    def __init__(self, fail_with: Exception | None = None):
        self.calls: list[dict] = []
        self.fail_with = fail_with

    def apply_async(self, args=None, kwargs=None, countdown=None, task_id=None, **options):
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append({"args": args, "countdown": countdown, "task_id": task_id})
        return task_id


# ─── Provider clients ──────────────────────────────────────────────────────────

def account_payload(external_id: str, **overrides) -> dict:
    payload = {
        "id": external_id,
        "name": f"Account {external_id}",
        "type": "depository",
        "subtype": "checking",
        "currency": "usd",
        "balances": {"current": "100.00", "available": "95.50"},
    }
    payload.update(overrides)
    return payload


def transaction_payload(external_id: str, amount: str = "-12.34", **overrides) -> dict:
    payload = {
        "id": external_id,
        "amount": amount,
        "date": "2024-01-15",
        "description": f"Purchase {external_id}",
        "status": "posted",
        "type": "card_payment",
    }
    payload.update(overrides)
    return payload


class PagedClient:
    """Serves canned pages keyed by cursor and records every call.

    ``accounts`` and ``transactions[account_id]`` map a cursor (``None`` for the
    first page) to a :class:`Page`.
    """

    def __init__(self, accounts: dict, transactions: dict | None = None):
        self.accounts = accounts
        self.transactions = transactions or {}
        self.account_calls: list[str | None] = []
        self.transaction_calls: list[tuple[str, str | None]] = []
        self.account_params: list[dict | None] = []

    def list_accounts(self, cursor=None, params=None):
        self.account_calls.append(cursor)
        self.account_params.append(params)
        return self.accounts.get(cursor, Page())

    def list_transactions(self, account_external_id, cursor=None, params=None):
        self.transaction_calls.append((account_external_id, cursor))
        pages = self.transactions.get(account_external_id, {})
        result = pages.get(cursor, Page())
        if isinstance(result, Exception):
            raise result
        return result


def success_client() -> PagedClient:
    """Two accounts with single-page transaction listings and final cursors."""
    return PagedClient(
        accounts={
            None: Page(
                [account_payload("acc_alpha"), account_payload("acc_beta", currency="EUR")],
                next_cursor=None,
            ),
        },
        transactions={
            "acc_alpha": {
                None: Page(
                    [transaction_payload("txn_a1", "-12.34"), transaction_payload("txn_a2", "250.00")],
                    next_cursor="alpha-c1",
                ),
                "alpha-c1": Page([], next_cursor=None),
            },
            "acc_beta": {
                None: Page([transaction_payload("txn_b1", "-5.0000")], next_cursor="beta-c1"),
                "beta-c1": Page([], next_cursor=None),
            },
        },
    )


def rate_limited_error(retry_after: str = "45") -> ProviderHTTPError:
    return ProviderHTTPError(429, {"Retry-After": retry_after}, {"code": "rate_limited"})
