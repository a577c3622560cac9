"""
Core: Broker Connector (Alpaca)

REST client for the trading API (account, positions, orders, assets,
activities, clock) and the market-data API (latest quotes/trades, bars,
orderbooks). Every call runs through a bounded concurrency limiter and a hard
timeout; idempotent calls retry transient failures on a short backoff
schedule. Market-data calls additionally feed a global circuit breaker.

Symbols are converted at this boundary: callers pass and receive canonical
keys (``BTC/USD``, ``AAPL``); the compact form never leaves this module.
"""

import logging
import os
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

from core.exceptions import HttpError, MarketDataCooldown, NetworkError, OrderRejected
from infra.concurrency import ApiLimiters, CircuitBreaker
from infra.symbols import from_broker_symbol, is_crypto, normalize_symbol, to_broker_symbol

logger = logging.getLogger(__name__)

TRADING_BASE_LIVE = "https://api.alpaca.markets/v2"
TRADING_BASE_PAPER = "https://paper-api.alpaca.markets/v2"
DATA_BASE = "https://data.alpaca.markets"

KEY_ENV_VARS = ("APCA_API_KEY_ID", "ALPACA_KEY_ID", "ALPACA_API_KEY_ID", "ALPACA_API_KEY")
SECRET_ENV_VARS = ("APCA_API_SECRET_KEY", "ALPACA_SECRET_KEY", "ALPACA_API_SECRET_KEY")

# Transient statuses; anything else is surfaced immediately.
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

TIMEFRAME_SECONDS = {
    "1Min": 60,
    "5Min": 300,
    "15Min": 900,
    "30Min": 1800,
    "1Hour": 3600,
    "1Day": 86400,
}


@dataclass
class Bar:
    """Candlestick bar"""
    symbol: str
    timestamp: str
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class OrderBook:
    """Top-of-book depth; levels are (price, size) sorted best first."""
    symbol: str
    bids: List[Tuple[float, float]] = field(default_factory=list)
    asks: List[Tuple[float, float]] = field(default_factory=list)
    timestamp: Optional[str] = None


def _first_env(names: Sequence[str]) -> str:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return ""


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def canonical_order(order: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of a broker order with canonical symbols (legs included)."""
    out = dict(order)
    raw_symbol = order.get("symbol")
    if raw_symbol:
        out["broker_symbol"] = raw_symbol
        out["symbol"] = from_broker_symbol(raw_symbol)
    legs = order.get("legs")
    if legs:
        out["legs"] = [canonical_order(leg) for leg in legs]
    return out


def canonical_position(position: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(position)
    raw_symbol = position.get("symbol")
    if raw_symbol:
        out["broker_symbol"] = raw_symbol
        out["symbol"] = from_broker_symbol(raw_symbol)
    return out


class AlpacaBroker:
    """
    Alpaca REST connector.

    Supports:
    - Account data (account, positions, activities, clock, assets)
    - Order execution (submit, replace, cancel, lookup by id / client id)
    - Market data (latest quotes/trades, bars, crypto orderbooks)
    """

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None, *,
                 trading_base: str = TRADING_BASE_PAPER, data_base: str = DATA_BASE,
                 read_only: bool = True, limiters: Optional[ApiLimiters] = None,
                 market_data_breaker: Optional[CircuitBreaker] = None,
                 trading_timeout: Tuple[float, float] = (2.0, 5.0),
                 market_data_timeout: Tuple[float, float] = (1.0, 2.0),
                 backoff_schedule_ms: Sequence[int] = (250, 500, 1000),
                 total_retry_seconds: float = 3.0,
                 crypto_location: str = "us",
                 metrics=None,
                 sleep: Callable[[float], None] = time.sleep):
        self.api_key = api_key or _first_env(KEY_ENV_VARS)
        self.api_secret = api_secret or _first_env(SECRET_ENV_VARS)
        self.trading_base = trading_base.rstrip("/")
        self.data_base = data_base.rstrip("/")
        self.read_only = read_only
        self.limiters = limiters or ApiLimiters.from_config()
        self.market_data_breaker = market_data_breaker or CircuitBreaker(
            name="market_data", threshold=5, window_seconds=60.0, cooldown_seconds=30.0
        )
        self.trading_timeout = tuple(trading_timeout)
        self.market_data_timeout = tuple(market_data_timeout)
        self.backoff_schedule_ms = list(backoff_schedule_ms)
        self.total_retry_seconds = float(total_retry_seconds)
        self.crypto_location = crypto_location
        self.metrics = metrics
        self._sleep = sleep

        if not self.api_key or not self.api_secret:
            logger.warning("Alpaca credentials missing; authenticated calls will fail")

        logger.info(
            f"Initialized AlpacaBroker (trading_base={self.trading_base}, read_only={read_only}, "
            f"timeouts=trading{self.trading_timeout}/market_data{self.market_data_timeout})"
        )

    @classmethod
    def from_config(cls, app_config: Dict[str, Any], policy: Optional[Dict[str, Any]] = None,
                    metrics=None, read_only: Optional[bool] = None) -> "AlpacaBroker":
        broker_cfg = app_config.get("broker", {}) or {}
        policy = policy or {}
        concurrency_cfg = policy.get("concurrency", {}) or {}
        mode = str(app_config.get("app", {}).get("mode", "PAPER")).upper()
        default_base = TRADING_BASE_LIVE if mode == "LIVE" else TRADING_BASE_PAPER
        breaker = CircuitBreaker(
            name="market_data",
            threshold=int(concurrency_cfg.get("market_data_failure_threshold", 5)),
            window_seconds=float(concurrency_cfg.get("market_data_failure_window_seconds", 60)),
            cooldown_seconds=float(concurrency_cfg.get("market_data_cooldown_seconds", 30)),
        )
        return cls(
            trading_base=broker_cfg.get("trading_base") or default_base,
            data_base=broker_cfg.get("data_base") or DATA_BASE,
            read_only=(mode == "DRY_RUN") if read_only is None else read_only,
            limiters=ApiLimiters.from_config(concurrency_cfg),
            market_data_breaker=breaker,
            trading_timeout=(
                float(broker_cfg.get("trading_connect_timeout_seconds", 2.0)),
                float(broker_cfg.get("trading_read_timeout_seconds", 5.0)),
            ),
            market_data_timeout=(
                float(broker_cfg.get("market_data_connect_timeout_seconds", 1.0)),
                float(broker_cfg.get("market_data_read_timeout_seconds", 2.0)),
            ),
            backoff_schedule_ms=broker_cfg.get("backoff_schedule_ms", [250, 500, 1000]),
            total_retry_seconds=float(broker_cfg.get("total_retry_seconds", 3.0)),
            crypto_location=broker_cfg.get("crypto_location", "us"),
            metrics=metrics,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "APCA-API-KEY-ID": self.api_key,
            "APCA-API-SECRET-KEY": self.api_secret,
            "Content-Type": "application/json",
        }

    def _req(self, method: str, path: str, *, channel: str = "trading",
             params: Optional[Dict[str, Any]] = None, body: Optional[dict] = None,
             allow_retry: bool = True, purpose: str = "") -> Any:
        """
        Make one logical request with bounded retries.

        Retries (only when ``allow_retry``):
        - 429 and 5xx responses
        - Network errors (timeout, connection)

        Never retries other 4xx. 401/403 are logged as auth failures.
        """
        is_market_data = channel == "market_data"
        if is_market_data and self.market_data_breaker.is_open():
            raise MarketDataCooldown(self.market_data_breaker.remaining_seconds() * 1000.0)

        base = self.data_base if is_market_data else self.trading_base
        url = base + path
        timeout = self.market_data_timeout if is_market_data else self.trading_timeout
        limiter = self.limiters.for_channel(channel)
        total_attempts = len(self.backoff_schedule_ms) + 1 if allow_retry else 1
        started = time.monotonic()
        endpoint = purpose or f"{method} {path}"
        last_error: Optional[Exception] = None

        for attempt in range(1, total_attempts + 1):
            call_started = time.monotonic()
            transient = False
            try:
                with limiter.slot():
                    response = requests.request(
                        method,
                        url,
                        headers=self._headers(),
                        params=params,
                        json=body,
                        timeout=timeout,
                    )
                status = response.status_code
                self._record_call(endpoint, channel, time.monotonic() - call_started, str(status))
                if status >= 400:
                    error = HttpError(endpoint, status, getattr(response, "text", "") or "", attempts=attempt)
                    if error.is_auth:
                        logger.error(f"AUTH_FAILURE endpoint={endpoint} status={status}")
                    elif status == 404:
                        logger.debug(f"Alpaca 404: {endpoint}")
                    else:
                        logger.warning(
                            f"http_request_failed endpoint={endpoint} status={status} "
                            f"attempt={attempt}/{total_attempts} snippet={error.snippet!r}"
                        )
                    transient = status in RETRY_STATUS_CODES
                    raise error
                if status == 204:
                    result = {}
                else:
                    try:
                        result = response.json()
                    except ValueError as exc:
                        logger.warning(f"Malformed response body from {endpoint} (status={status}): {exc}")
                        raise HttpError(endpoint, status, getattr(response, "text", "") or "",
                                        attempts=attempt) from exc
                if is_market_data:
                    self.market_data_breaker.record_success()
                return result
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                self._record_call(endpoint, channel, time.monotonic() - call_started, "network_error")
                logger.warning(f"Network error on {endpoint}: {exc}, attempt {attempt}/{total_attempts}")
                last_error = NetworkError(endpoint, exc, attempts=attempt)
                transient = True
            except HttpError as exc:
                last_error = exc

            if not (allow_retry and transient) or attempt >= total_attempts:
                break
            delay = self.backoff_schedule_ms[attempt - 1] / 1000.0 + random.uniform(0, 0.2)
            if time.monotonic() - started + delay > self.total_retry_seconds:
                logger.debug(f"Retry budget exhausted for {endpoint}")
                break
            self._sleep(delay)

        if is_market_data and (not isinstance(last_error, HttpError) or last_error.is_transient):
            if self.market_data_breaker.record_failure(str(last_error)):
                logger.warning(
                    f"Market data circuit breaker open for "
                    f"{self.market_data_breaker.cooldown_seconds:.0f}s after repeated failures"
                )
                if self.metrics is not None:
                    self.metrics.record_circuit_breaker_trip("market_data")
        assert last_error is not None
        raise last_error

    def _record_call(self, endpoint: str, channel: str, duration: float, status: str) -> None:
        if self.metrics is not None:
            self.metrics.record_api_call(endpoint, channel, duration, status)

    def _ensure_writable(self, action: str) -> None:
        if self.read_only:
            raise OrderRejected(f"{action} blocked: broker is read-only", broker_code="read_only")

    # ===== Account =====
    def get_account(self) -> Dict[str, Any]:
        return self._req("GET", "/account", purpose="get_account")

    def get_clock(self) -> Dict[str, Any]:
        return self._req("GET", "/clock", purpose="get_clock")

    def list_positions(self) -> List[Dict[str, Any]]:
        rows = self._req("GET", "/positions", purpose="list_positions") or []
        return [canonical_position(row) for row in rows]

    def get_position(self, symbol: str) -> Optional[Dict[str, Any]]:
        try:
            row = self._req("GET", f"/positions/{to_broker_symbol(symbol)}", purpose="get_position")
        except HttpError as exc:
            if exc.status == 404:
                return None
            raise
        return canonical_position(row)

    def get_asset(self, symbol: str) -> Optional[Dict[str, Any]]:
        try:
            return self._req("GET", f"/assets/{to_broker_symbol(symbol)}", purpose="get_asset")
        except HttpError as exc:
            if exc.status == 404:
                return None
            raise

    def list_assets(self, asset_class: str = "crypto", status: str = "active") -> List[Dict[str, Any]]:
        rows = self._req(
            "GET", "/assets", params={"asset_class": asset_class, "status": status}, purpose="list_assets"
        ) or []
        out = []
        for row in rows:
            item = dict(row)
            item["symbol"] = normalize_symbol(row.get("symbol"))
            out.append(item)
        return out

    def list_activities(self, activity_type: str = "FILL", after: Optional[str] = None,
                        page_size: int = 100) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"page_size": page_size, "direction": "desc"}
        if after:
            params["after"] = after
        rows = self._req(
            "GET", f"/account/activities/{activity_type}", params=params, purpose="list_activities"
        ) or []
        return [canonical_order(row) for row in rows]

    # ===== Orders =====
    def list_orders(self, status: str = "open", after: Optional[str] = None, limit: int = 500,
                    nested: bool = True, symbols: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"status": status, "limit": limit, "nested": str(nested).lower()}
        if after:
            params["after"] = after
        if symbols:
            params["symbols"] = ",".join(to_broker_symbol(s) for s in symbols)
        rows = self._req("GET", "/orders", params=params, purpose="list_orders") or []
        return [canonical_order(row) for row in rows]

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            row = self._req("GET", f"/orders/{order_id}", params={"nested": "true"}, purpose="get_order")
        except HttpError as exc:
            if exc.status == 404:
                return None
            raise
        return canonical_order(row)

    def get_order_by_client_id(self, client_order_id: str) -> Optional[Dict[str, Any]]:
        try:
            row = self._req(
                "GET", "/orders:by_client_order_id",
                params={"client_order_id": client_order_id},
                purpose="get_order_by_client_id",
            )
        except HttpError as exc:
            if exc.status == 404:
                return None
            raise
        return canonical_order(row)

    def submit_order(self, symbol: str, side: str, qty: float, *, order_type: str = "limit",
                     time_in_force: str = "gtc", limit_price: Optional[float] = None,
                     client_order_id: Optional[str] = None) -> Dict[str, Any]:
        """Place an order. Not retried: a lost response is resolved by client id."""
        self._ensure_writable("submit_order")
        body: Dict[str, Any] = {
            "symbol": to_broker_symbol(symbol) if not is_crypto(symbol) else normalize_symbol(symbol),
            "qty": f"{qty:.9f}".rstrip("0").rstrip("."),
            "side": side.lower(),
            "type": order_type,
            "time_in_force": time_in_force,
        }
        if limit_price is not None:
            body["limit_price"] = f"{limit_price:.10f}".rstrip("0").rstrip(".")
        if client_order_id:
            body["client_order_id"] = client_order_id
        try:
            row = self._req("POST", "/orders", body=body, allow_retry=False, purpose="submit_order")
        except HttpError as exc:
            if exc.status in (403, 422):
                raise OrderRejected(
                    f"Order rejected for {symbol}: {exc.snippet}", broker_code=exc.status, status_code=exc.status
                ) from exc
            raise
        return canonical_order(row)

    def replace_order(self, order_id: str, *, qty: Optional[float] = None,
                      limit_price: Optional[float] = None,
                      client_order_id: Optional[str] = None) -> Dict[str, Any]:
        self._ensure_writable("replace_order")
        body: Dict[str, Any] = {}
        if qty is not None:
            body["qty"] = f"{qty:.9f}".rstrip("0").rstrip(".")
        if limit_price is not None:
            body["limit_price"] = f"{limit_price:.10f}".rstrip("0").rstrip(".")
        if client_order_id:
            body["client_order_id"] = client_order_id
        try:
            row = self._req("PATCH", f"/orders/{order_id}", body=body, allow_retry=False, purpose="replace_order")
        except HttpError as exc:
            if exc.status in (403, 422):
                raise OrderRejected(
                    f"Replace rejected for {order_id}: {exc.snippet}", broker_code=exc.status, status_code=exc.status
                ) from exc
            raise
        return canonical_order(row)

    def cancel_order(self, order_id: str) -> bool:
        """Cancel an order. Returns True when the broker accepted the cancel."""
        self._ensure_writable("cancel_order")
        self._req("DELETE", f"/orders/{order_id}", purpose="cancel_order")
        return True

    # ===== Market data =====
    def _split(self, symbols: Sequence[str]) -> Tuple[List[str], List[str]]:
        crypto, equities = [], []
        for raw in symbols:
            symbol = normalize_symbol(raw)
            if not symbol:
                continue
            (crypto if is_crypto(symbol) else equities).append(symbol)
        return crypto, equities

    def _crypto_path(self, suffix: str) -> str:
        return f"/v1beta3/crypto/{self.crypto_location}/{suffix}"

    def get_latest_quotes(self, symbols: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Return symbol -> {bid, ask, timestamp} for every symbol the feed knows."""
        crypto, equities = self._split(symbols)
        raw: Dict[str, Any] = {}
        if crypto:
            data = self._req("GET", self._crypto_path("latest/quotes"), channel="market_data",
                             params={"symbols": ",".join(crypto)}, purpose="latest_quotes_crypto")
            raw.update((data or {}).get("quotes") or {})
        if equities:
            data = self._req("GET", "/v2/stocks/quotes/latest", channel="market_data",
                             params={"symbols": ",".join(equities)}, purpose="latest_quotes_stocks")
            raw.update((data or {}).get("quotes") or {})
        out = {}
        for symbol, quote in raw.items():
            out[normalize_symbol(symbol)] = {
                "bid": _to_float(quote.get("bp")),
                "ask": _to_float(quote.get("ap")),
                "timestamp": quote.get("t"),
            }
        return out

    def get_latest_trades(self, symbols: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Return symbol -> {price, timestamp}."""
        crypto, equities = self._split(symbols)
        raw: Dict[str, Any] = {}
        if crypto:
            data = self._req("GET", self._crypto_path("latest/trades"), channel="market_data",
                             params={"symbols": ",".join(crypto)}, purpose="latest_trades_crypto")
            raw.update((data or {}).get("trades") or {})
        if equities:
            data = self._req("GET", "/v2/stocks/trades/latest", channel="market_data",
                             params={"symbols": ",".join(equities)}, purpose="latest_trades_stocks")
            raw.update((data or {}).get("trades") or {})
        return {
            normalize_symbol(symbol): {"price": _to_float(trade.get("p")), "timestamp": trade.get("t")}
            for symbol, trade in raw.items()
        }

    def get_bars(self, symbol: str, timeframe: str = "1Min", limit: int = 60) -> List[Bar]:
        """Return up to ``limit`` most recent bars, oldest first."""
        symbol = normalize_symbol(symbol)
        span = TIMEFRAME_SECONDS.get(timeframe, 60) * max(limit, 1) * 2
        start = (datetime.now(timezone.utc) - timedelta(seconds=span)).strftime("%Y-%m-%dT%H:%M:%SZ")
        params = {"symbols": symbol, "timeframe": timeframe, "start": start, "limit": 10000}
        if is_crypto(symbol):
            data = self._req("GET", self._crypto_path("bars"), channel="market_data",
                             params=params, purpose="bars_crypto")
        else:
            data = self._req("GET", "/v2/stocks/bars", channel="market_data",
                             params=params, purpose="bars_stocks")
        rows = ((data or {}).get("bars") or {}).get(symbol) or []
        bars = [
            Bar(
                symbol=symbol,
                timestamp=row.get("t"),
                open=_to_float(row.get("o")),
                high=_to_float(row.get("h")),
                low=_to_float(row.get("l")),
                close=_to_float(row.get("c")),
                volume=_to_float(row.get("v")),
            )
            for row in rows
        ]
        bars.sort(key=lambda b: b.timestamp or "")
        return bars[-limit:]

    def get_orderbook(self, symbol: str) -> Optional[OrderBook]:
        """Crypto orderbook snapshot; equities have no book feed (None)."""
        symbol = normalize_symbol(symbol)
        if not is_crypto(symbol):
            return None
        data = self._req("GET", self._crypto_path("latest/orderbooks"), channel="market_data",
                         params={"symbols": symbol}, purpose="orderbook_crypto")
        book = ((data or {}).get("orderbooks") or {}).get(symbol)
        if not book:
            return None

        def _levels(side):
            return [(_to_float(lvl.get("p")), _to_float(lvl.get("s"))) for lvl in side or []]

        bids = sorted(_levels(book.get("b")), key=lambda lvl: -lvl[0])
        asks = sorted(_levels(book.get("a")), key=lambda lvl: lvl[0])
        return OrderBook(symbol=symbol, bids=bids, asks=asks, timestamp=book.get("t"))
