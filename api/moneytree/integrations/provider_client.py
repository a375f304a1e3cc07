"""HTTP client for the banking-data provider API.

Wraps ``httpx`` with basic-auth credentials, optional mutual TLS, per-call
timeouts and a bounded retry policy. Listing endpoints are cursor-paginated and
return a :class:`Page`; every failure is raised as a
:class:`~moneytree.integrations.exceptions.ProviderClientError` subclass.
"""

import base64
import logging
import os
import ssl
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from moneytree.core.config import settings
from moneytree.integrations.exceptions import (
    ProviderClientError,
    ProviderDataError,
    ProviderHTTPError,
    ProviderTimeoutError,
    ProviderTransportError,
)

logger = logging.getLogger(__name__)


# ─── Client certificate sources ────────────────────────────────────────────────

@dataclass(frozen=True)
class CertificateFiles:
    """Client certificate and key stored on disk."""

    cert_path: str
    key_path: str


@dataclass(frozen=True)
class CertificatePem:
    """Client certificate and key supplied inline as PEM text."""

    cert_pem: bytes | str
    key_pem: bytes | str


CertificateSource = CertificateFiles | CertificatePem


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode() if isinstance(value, str) else value


def build_ssl_context(certificate: CertificateSource | None) -> ssl.SSLContext:
    """Resolve a certificate source into an SSL context for mutual TLS."""
    context = ssl.create_default_context()
    if certificate is None:
        return context

    if isinstance(certificate, CertificateFiles):
        context.load_cert_chain(certfile=certificate.cert_path, keyfile=certificate.key_path)
        return context

    # ssl only loads chains from files; stage the PEM material in a private dir
    with tempfile.TemporaryDirectory(prefix="provider-mtls-") as tmp:
        cert_path = os.path.join(tmp, "client.crt")
        key_path = os.path.join(tmp, "client.key")
        for path, data in ((cert_path, certificate.cert_pem), (key_path, certificate.key_pem)):
            fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o600)
            with os.fdopen(fd, "wb") as fh:
                fh.write(_as_bytes(data))
        context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    return context


def certificate_from_settings() -> CertificateSource | None:
    if settings.provider_cert_pem and settings.provider_key_pem:
        return CertificatePem(settings.provider_cert_pem, settings.provider_key_pem)
    if settings.provider_cert_file and settings.provider_key_file:
        return CertificateFiles(settings.provider_cert_file, settings.provider_key_file)
    return None


# ─── Retry policy & pages ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 2.0
    retry_for: frozenset[int] = frozenset({408, 425, 429, 500, 502, 503, 504})
    retry_transport_errors: bool = True

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass
class Page:
    """One page of a cursor-paginated listing. ``next_cursor=None`` marks the last page."""

    data: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


def parse_page(body: Any) -> Page:
    """Normalize a listing payload: a bare list, or an object with data + cursor."""
    if isinstance(body, list):
        return Page(data=body, next_cursor=None)
    if not isinstance(body, dict):
        raise ProviderDataError("unexpected listing payload", {"payload_type": type(body).__name__})

    data = body.get("data")
    if data is None:
        data = body.get("accounts")
    if data is None:
        data = body.get("transactions")
    if data is None:
        data = []
    if not isinstance(data, list):
        data = [data]

    cursor = body.get("next_cursor") or body.get("next")
    if cursor is not None and not isinstance(cursor, str):
        cursor = str(cursor)
    return Page(data=data, next_cursor=cursor or None)


def _error_details(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return {"message": text} if text else {}
    if isinstance(body, dict):
        return {k: body[k] for k in ("code", "message", "error") if body.get(k) is not None}
    return {}


# ─── Client ────────────────────────────────────────────────────────────────────

class ProviderClient:
    """Synchronous provider API client. One instance per worker task."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 10.0,
        certificate: CertificateSource | None = None,
        retry: RetryPolicy | None = RetryPolicy(),
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_key:
            raise ValueError("provider API key is not configured")
        token = base64.b64encode(f"{api_key}:".encode()).decode()
        self.retry = retry
        self._sleep = sleep
        self._http = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            verify=build_ssl_context(certificate),
            transport=transport,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Basic {token}",
            },
        )

    @classmethod
    def from_settings(cls, **overrides) -> "ProviderClient":
        options = {
            "api_key": settings.provider_api_key,
            "base_url": settings.provider_api_host,
            "timeout": settings.provider_timeout_seconds,
            "certificate": certificate_from_settings(),
            "retry": RetryPolicy(max_attempts=settings.provider_max_attempts),
        }
        options.update(overrides)
        return cls(**options)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ProviderClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Endpoints ──────────────────────────────────────────────────────────

    def list_accounts(self, cursor: str | None = None, params: dict | None = None) -> Page:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if cursor is not None:
            query["cursor"] = cursor
        return parse_page(self._request("GET", "/accounts", params=query))

    def list_transactions(
        self, account_external_id: str, cursor: str | None = None, params: dict | None = None
    ) -> Page:
        query = {
            k: v for k, v in (params or {}).items()
            if v is not None and k in ("from", "to", "count")
        }
        if cursor is not None:
            query["cursor"] = cursor
        return parse_page(
            self._request("GET", f"/accounts/{account_external_id}/transactions", params=query)
        )

    # ── Plumbing ───────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs) -> Any:
        max_attempts = self.retry.max_attempts if self.retry else 1
        attempt = 1
        while True:
            try:
                response = self._http.request(method, path, **kwargs)
            except httpx.TimeoutException as exc:
                error: ProviderClientError = ProviderTimeoutError(str(exc) or "request timed out")
            except httpx.TransportError as exc:
                error = ProviderTransportError(str(exc) or exc.__class__.__name__)
            else:
                if response.is_success:
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise ProviderDataError("provider returned invalid JSON") from exc
                error = ProviderHTTPError(
                    response.status_code, dict(response.headers), _error_details(response)
                )

            if attempt >= max_attempts or not self._should_retry(error):
                raise error

            delay = self.retry.delay(attempt)
            logger.debug(
                "Provider %s %s failed (%s), retry %d/%d in %.2fs",
                method, path, error, attempt, max_attempts - 1, delay,
            )
            self._sleep(delay)
            attempt += 1

    def _should_retry(self, error: ProviderClientError) -> bool:
        if self.retry is None:
            return False
        if isinstance(error, ProviderHTTPError):
            return error.status in self.retry.retry_for
        return isinstance(error, ProviderTransportError) and self.retry.retry_transport_errors
