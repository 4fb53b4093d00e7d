"""Classified failures raised by event sources and the layers wrapping them."""

from __future__ import annotations


class EventSourceError(Exception):
    """Generic failure of one event source call."""

    retryable = False

    def __init__(self, message: str, *, source: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class TransientSourceError(EventSourceError):
    """Timeout, transport failure, or 5xx response."""

    retryable = True


class RateLimitError(TransientSourceError):
    """The source answered with HTTP 429 or an equivalent RPC error."""


class CircuitOpenError(EventSourceError):
    """The source failed repeatedly and is cooling down."""


class SearchDepthExceededError(EventSourceError):
    """The source rejected the requested range as too large."""

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        range_hours: float | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, source=source, status_code=status_code)
        self.range_hours = range_hours


class FetchError(Exception):
    """Terminal failure after every retry and fallback was spent."""


class AllSourcesFailedError(FetchError):
    def __init__(self, target: str, errors: list[EventSourceError]) -> None:
        self.target = target
        self.errors = list(errors)
        detail = "; ".join(
            f"{error.source or 'unknown'}: {error}" for error in self.errors
        ) or "no sources configured"
        super().__init__(f"All sources failed for {target}: {detail}")


class SearchDepthLimitError(FetchError):
    """The requested history range cannot be served as configured."""

    def __init__(self, range_hours: float, *, too_restrictive: bool) -> None:
        self.range_hours = range_hours
        self.too_restrictive = too_restrictive
        if too_restrictive:
            message = (
                f"Search depth limit too restrictive: {range_hours:g}h. "
                "Please increase search depth in settings."
            )
        else:
            message = (
                f"Search range of {range_hours:g}h rejected by every source; "
                "reduce search depth in settings."
            )
        super().__init__(message)


class DiscoveryFailedError(Exception):
    """No bridge returned data during a discovery run."""

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = dict(failures)
        summary = ", ".join(f"{key}: {reason}" for key, reason in sorted(self.failures.items()))
        super().__init__(f"Discovery failed for every bridge ({summary})")


class DiscoveryInProgressError(RuntimeError):
    """A discovery run is already active."""


class AmountFormatError(ValueError):
    """A numeric field could not be converted to a canonical integer string."""
