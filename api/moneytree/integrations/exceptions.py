"""Typed exception hierarchy for provider client errors.

Lets the synchronizer tell throttling, HTTP failures, transport failures and
malformed payloads apart without inspecting messages.
"""


class ProviderClientError(Exception):
    """Base exception for all provider client errors."""

    kind = "unexpected"
    retriable = False

    def __init__(self, message: str, details: dict | None = None):
        self.details = details or {}
        super().__init__(message)


class ProviderHTTPError(ProviderClientError):
    """Non-2xx response from the provider API."""

    kind = "http"

    def __init__(
        self,
        status: int,
        headers: dict[str, str] | None = None,
        details: dict | None = None,
    ):
        self.status = status
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        message = (details or {}).get("message") or f"provider returned HTTP {status}"
        super().__init__(message, details)

    @property
    def retriable(self) -> bool:
        """429 (rate limit) and 5xx errors are generally retriable."""
        return self.status == 429 or self.status >= 500


class ProviderTransportError(ProviderClientError):
    """Network failures such as refused connections or TLS errors."""

    kind = "transport"
    retriable = True


class ProviderTimeoutError(ProviderTransportError):
    """The provider did not answer within the configured timeout."""

    kind = "timeout"


class ProviderDataError(ProviderClientError):
    """Malformed or unparseable response from the provider."""

    kind = "data"
    retriable = False
