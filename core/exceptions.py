"""Shared exception types for core trading logic."""

from typing import Any, Dict, Optional


class TradingError(RuntimeError):
    """Base class for failures surfaced by the engine.

    Carries a stable ``code`` and an HTTP-ish ``status_code`` so an outer
    layer can render ``{error, code, statusCode}`` without knowing the type.
    """

    code = "trading_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "statusCode": self.status_code,
        }


class ConfigError(TradingError):
    code = "config_error"


class NetworkError(TradingError):
    """Timeout or connection failure talking to the broker."""

    code = "network_error"
    status_code = 504

    def __init__(self, endpoint: str, original: Optional[Exception] = None,
                 attempts: int = 1):
        super().__init__(f"Network error on {endpoint}: {original}")
        self.endpoint = endpoint
        self.original = original
        self.attempts = attempts


class HttpError(TradingError):
    """Non-2xx response from the broker."""

    code = "http_error"

    def __init__(self, endpoint: str, status: int, snippet: str = "",
                 attempts: int = 1):
        super().__init__(f"HTTP {status} on {endpoint}", status_code=status)
        self.endpoint = endpoint
        self.status = status
        self.snippet = (snippet or "")[:200]
        self.attempts = attempts

    @property
    def is_auth(self) -> bool:
        return self.status in (401, 403)

    @property
    def is_transient(self) -> bool:
        return self.status == 429 or self.status >= 500


class QuoteError(TradingError):
    """Base for quote acquisition failures."""

    code = "quote_error"
    status_code = 503

    def __init__(self, symbol: str, message: str):
        super().__init__(f"{symbol}: {message}")
        self.symbol = symbol


class StaleQuote(QuoteError):
    code = "stale_quote"

    def __init__(self, symbol: str, age_ms: float, max_age_ms: float):
        super().__init__(symbol, f"quote too stale ({age_ms:.0f}ms > {max_age_ms:.0f}ms)")
        self.age_ms = age_ms
        self.max_age_ms = max_age_ms


class AbsurdQuoteAge(QuoteError):
    code = "absurd_quote_age"

    def __init__(self, symbol: str, raw_timestamp: Any = None):
        super().__init__(symbol, f"absurd quote timestamp {raw_timestamp!r}")
        self.raw_timestamp = raw_timestamp


class NoData(QuoteError):
    code = "no_data"
    status_code = 404


class InvalidQuote(QuoteError):
    code = "invalid_quote"
    status_code = 422


class QuoteCooldown(QuoteError):
    code = "quote_cooldown"
    status_code = 429

    def __init__(self, symbol: str, remaining_ms: float):
        super().__init__(symbol, f"quote cooldown active ({remaining_ms:.0f}ms remaining)")
        self.remaining_ms = remaining_ms


class MarketDataCooldown(TradingError):
    """Global market-data circuit breaker is open."""

    code = "market_data_cooldown"
    status_code = 503

    def __init__(self, remaining_ms: float):
        super().__init__(f"market data cooldown active ({remaining_ms:.0f}ms remaining)")
        self.remaining_ms = remaining_ms


class OrderRejected(TradingError):
    """Broker refused an order mutation."""

    code = "order_rejected"
    status_code = 422

    def __init__(self, message: str, *, broker_code: Optional[Any] = None,
                 status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.broker_code = broker_code

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.broker_code is not None:
            payload["brokerCode"] = self.broker_code
        return payload


class InvalidTransition(TradingError):
    code = "invalid_transition"
