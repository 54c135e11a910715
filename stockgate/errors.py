from __future__ import annotations


class GatewayError(Exception):
    code = "GATEWAY_ERROR"

    def __init__(self, message: str | None = None, *, symbol: str | None = None) -> None:
        self.symbol = symbol
        super().__init__(message or self.code)


class InvalidInputError(GatewayError, ValueError):
    code = "INVALID_INPUT"


class UpstreamError(GatewayError):
    """Provider or network failure. Absorbed by the quote fallback chain."""

    code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        symbol: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, symbol=symbol)


class UpstreamRateLimitedError(UpstreamError):
    code = "UPSTREAM_RATE_LIMITED"


class UpstreamTimeoutError(GatewayError):
    code = "UPSTREAM_TIMEOUT"


class QueueFullError(GatewayError):
    code = "QUEUE_FULL"


class CallerTimeoutError(GatewayError):
    code = "CALLER_TIMEOUT"
