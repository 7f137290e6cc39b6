"""Exception hierarchy for the bridge reconciler.

Source adapters raise ``LogSourceError`` subclasses so the resilience layer
can decide what to retry, and the orchestrator can keep per-bridge failures
isolated.
"""


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""


class LogSourceError(ReconcilerError):
    """A log source failed to answer a request."""

    def __init__(self, message: str, source: str = "") -> None:
        super().__init__(message)
        self.source = source


class TransientSourceError(LogSourceError):
    """Timeouts, connection resets and 5xx responses. Safe to retry."""


class RateLimitError(TransientSourceError):
    """The provider refused the request because of rate limiting (HTTP 429)."""


class RangeTooWideError(LogSourceError):
    """The provider rejected a block range as too wide."""


class UnsupportedOperationError(LogSourceError):
    """The source cannot serve this kind of request (e.g. block height from HTML)."""


class CircuitOpenError(ReconcilerError):
    """The circuit breaker for a provider is open; the call was not attempted."""

    def __init__(self, key: str, retry_in: float) -> None:
        super().__init__(f"Circuit open for {key}, retry in {retry_in:.1f}s")
        self.key = key
        self.retry_in = retry_in


class AllSourcesFailedError(ReconcilerError):
    """Every source in a fallback chain failed."""

    def __init__(self, network_key: str, errors: dict[str, str]) -> None:
        details = "; ".join(f"{name}: {err}" for name, err in errors.items())
        super().__init__(f"All sources failed for {network_key}: {details or 'no sources configured'}")
        self.network_key = network_key
        self.errors = errors


class EventDecodeError(ReconcilerError):
    """A log could not be decoded against its event schema."""


class NoDataAvailableError(ReconcilerError):
    """No bridge could be queried successfully, so there is nothing to reconcile."""
