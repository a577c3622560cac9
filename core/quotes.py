"""
Core: Quote Service

Best bid/ask per symbol with staleness, fallback and cooldown policy.

Lookup order for get_quote():
1. Per-symbol cooldown open -> QuoteCooldown (upstream not called)
2. Cached quote within min(max_age, cache TTL)
3. Latest-quotes endpoint
4. Latest-trade endpoint, synthesizing bid = ask = trade price

A quote older than the requested max age is never returned. Timestamps that
imply an absurd age (clock anomaly) are discarded outright.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from core.exceptions import (
    AbsurdQuoteAge,
    HttpError,
    InvalidQuote,
    MarketDataCooldown,
    NetworkError,
    NoData,
    QuoteCooldown,
    QuoteError,
    StaleQuote,
)
from infra.concurrency import FailureTracker
from infra.symbols import is_crypto, normalize_symbol

logger = logging.getLogger(__name__)

MAX_QUOTE_AGE_MS = 30000
ABSURD_AGE_MS = 86400 * 1000
MAX_CLOCK_SKEW_MS = 5000

_FRACTION_RE = re.compile(r"\.(\d+)")


def normalize_epoch_ms(value: float) -> Optional[float]:
    """Epoch number in s, ms, us or ns -> ms (magnitude decides the unit)."""
    try:
        value = abs(float(value))
    except (TypeError, ValueError):
        return None
    if value != value or value == float("inf"):
        return None
    if value < 2e10:
        return value * 1000.0
    if value < 2e13:
        return value
    if value < 2e16:
        return float(int(value // 1000))
    return float(int(value // 1e6))


def _parse_iso(text: str) -> Optional[datetime]:
    text = text.replace("Z", "+00:00").replace("z", "+00:00")
    # fromisoformat accepts at most microseconds; the feed sends nanoseconds
    match = _FRACTION_RE.search(text)
    if match and len(match.group(1)) > 6:
        text = text[: match.start(1)] + match.group(1)[:6] + text[match.end(1):]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_timestamp_ms(raw: Any) -> Optional[float]:
    """Accept ISO strings, datetimes and epoch numbers; return epoch ms or None."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            raw = raw.replace(tzinfo=timezone.utc)
        return raw.timestamp() * 1000.0
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return normalize_epoch_ms(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            return normalize_epoch_ms(float(text))
        except ValueError:
            pass
        parsed = _parse_iso(text)
        return parsed.timestamp() * 1000.0 if parsed else None
    return None


def compute_age_ms(now_ms: float, ts_ms: Optional[float]) -> Optional[float]:
    """Quote age; future timestamps (clock skew) count as age 0."""
    if ts_ms is None:
        return None
    age = now_ms - ts_ms
    if age < 0:
        if age < -MAX_CLOCK_SKEW_MS:
            logger.debug(f"Quote timestamp {-age:.0f}ms in the future (clock skew)")
        return 0.0
    return age


@dataclass(frozen=True)
class Quote:
    """Immutable best bid/ask. Invalid books are rejected, never clamped."""
    symbol: str
    bid: float
    ask: float
    observed_at_ms: float
    source: str = "quote"
    mid: float = field(init=False)

    def __post_init__(self):
        if not (self.bid > 0 and self.ask > 0):
            raise InvalidQuote(self.symbol, f"non-positive bid/ask ({self.bid}, {self.ask})")
        if self.bid > self.ask:
            raise InvalidQuote(self.symbol, f"crossed book (bid {self.bid} > ask {self.ask})")
        object.__setattr__(self, "mid", (self.bid + self.ask) / 2.0)

    @property
    def spread_bps(self) -> float:
        return (self.ask - self.bid) / self.mid * 10000.0

    def age_ms(self, now_ms: float) -> float:
        return compute_age_ms(now_ms, self.observed_at_ms) or 0.0


@dataclass
class _CachedQuote:
    quote: Quote
    fetched_at_ms: float


class QuoteService:
    """
    Quote acquisition with per-symbol failure cooldown.

    Usage:
        quotes = QuoteService(broker, policy.get("quotes", {}))
        quote = quotes.get_quote("BTC/USD", max_age_ms=30000)
    """

    def __init__(self, broker, config: Optional[Dict[str, Any]] = None,
                 clock: Callable[[], float] = time.time, metrics=None):
        config = config or {}
        self.broker = broker
        self.clock = clock
        self.metrics = metrics
        self.max_age_ms = float(config.get("max_quote_age_ms", MAX_QUOTE_AGE_MS))
        self.absurd_age_ms = float(config.get("absurd_age_ms", ABSURD_AGE_MS))
        self.crypto_ttl_ms = float(config.get("crypto_cache_ttl_ms", 2000))
        self.equity_ttl_ms = float(config.get("equity_cache_ttl_ms", 5000))
        self.last_known_max_age_ms = float(config.get("last_known_max_age_ms", 120000))
        self.failures = FailureTracker(
            threshold=int(config.get("failure_threshold", 3)),
            window_seconds=float(config.get("failure_window_ms", 60000)) / 1000.0,
            cooldown_seconds=float(config.get("failure_cooldown_ms", 60000)) / 1000.0,
            clock=clock,
        )
        self._cache: Dict[str, _CachedQuote] = {}
        self._last_known: Dict[str, Quote] = {}
        self._last_observed: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self.clock() * 1000.0

    def _ttl_ms(self, symbol: str) -> float:
        return self.crypto_ttl_ms if is_crypto(symbol) else self.equity_ttl_ms

    # ===== Public API =====
    def get_quote(self, symbol: str, max_age_ms: Optional[float] = None) -> Quote:
        """
        Return a quote no older than ``max_age_ms``.

        Raises:
            QuoteCooldown: symbol is cooling down after repeated failures
            MarketDataCooldown: global market-data breaker is open
            StaleQuote / AbsurdQuoteAge: neither endpoint had a usable fresh quote
            NoData / InvalidQuote / NetworkError / HttpError: upstream failure
        """
        symbol = normalize_symbol(symbol)
        max_age = self.max_age_ms if max_age_ms is None else float(max_age_ms)
        self._check_cooldown(symbol)

        cached = self._cached(symbol, max_age)
        if cached is not None:
            return cached

        return self._acquire(symbol, max_age, allow_trade_fallback=True)

    def fetch_direct(self, symbol: str, max_age_ms: Optional[float] = None) -> Quote:
        """Quotes endpoint only, bypassing the cache and the trade fallback."""
        symbol = normalize_symbol(symbol)
        max_age = self.max_age_ms if max_age_ms is None else float(max_age_ms)
        self._check_cooldown(symbol)
        return self._acquire(symbol, max_age, allow_trade_fallback=False)

    def last_known(self, symbol: str, max_age_ms: Optional[float] = None) -> Optional[Quote]:
        """Most recent valid quote regardless of freshness policy, bounded by ``max_age_ms``."""
        symbol = normalize_symbol(symbol)
        bound = self.last_known_max_age_ms if max_age_ms is None else float(max_age_ms)
        with self._lock:
            quote = self._last_known.get(symbol)
        if quote is None or quote.age_ms(self._now_ms()) > bound:
            return None
        return quote

    def prefetch(self, symbols: Iterable[str]) -> int:
        """Warm the cache with one batch request. Returns the number of quotes cached."""
        wanted = []
        for raw in symbols:
            symbol = normalize_symbol(raw)
            if not symbol or self.failures.is_cooling(symbol):
                continue
            if self._cached(symbol, self.max_age_ms) is None:
                wanted.append(symbol)
        if not wanted:
            return 0
        try:
            rows = self.broker.get_latest_quotes(wanted)
        except (MarketDataCooldown, NetworkError, HttpError) as exc:
            logger.warning(f"Quote prefetch failed for {len(wanted)} symbols: {exc}")
            return 0

        cached = 0
        for symbol in wanted:
            row = rows.get(symbol)
            if not row:
                continue
            try:
                self._build(symbol, row.get("bid"), row.get("ask"), row.get("timestamp"), "quote", self.max_age_ms)
            except QuoteError as exc:
                logger.debug(f"Prefetch skipped {symbol}: {exc.code}")
                continue
            cached += 1
        return cached

    def status_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            observed = {symbol: dict(info) for symbol, info in self._last_observed.items()}
            cached = len(self._cache)
        return {
            "last_observed": observed,
            "cached_quotes": cached,
            "failures": self.failures.snapshot(),
        }

    def invalidate(self, symbol: Optional[str] = None) -> None:
        with self._lock:
            if symbol is None:
                self._cache.clear()
            else:
                self._cache.pop(normalize_symbol(symbol), None)

    # ===== Internals =====
    def _check_cooldown(self, symbol: str) -> None:
        if self.failures.is_cooling(symbol):
            remaining_ms = self.failures.remaining_seconds(symbol) * 1000.0
            self._observe(symbol, None, "quote_cooldown")
            logger.debug(f"QUOTE_COOLDOWN symbol={symbol} remaining_ms={remaining_ms:.0f}")
            raise QuoteCooldown(symbol, remaining_ms)

    def _cached(self, symbol: str, max_age_ms: float) -> Optional[Quote]:
        now = self._now_ms()
        with self._lock:
            entry = self._cache.get(symbol)
        if entry is None:
            return None
        if now - entry.fetched_at_ms > self._ttl_ms(symbol):
            return None
        if entry.quote.age_ms(now) > max_age_ms:
            return None
        return entry.quote

    def _acquire(self, symbol: str, max_age_ms: float, allow_trade_fallback: bool) -> Quote:
        try:
            quote = self._fetch(symbol, max_age_ms, allow_trade_fallback)
        except MarketDataCooldown:
            self._observe(symbol, None, "market_data_cooldown")
            raise
        except (StaleQuote, AbsurdQuoteAge) as exc:
            # Staleness is the feed being quiet, not failing; it never trips the cooldown.
            self._observe(symbol, None, exc.code)
            self._record_failure_metric(exc.code)
            raise
        except (QuoteError, NetworkError, HttpError) as exc:
            self._observe(symbol, None, exc.code)
            self._record_failure_metric(exc.code)
            if self.failures.record_failure(symbol, exc.code):
                logger.warning(
                    f"QUOTE_COOLDOWN symbol={symbol} cooldown_s={self.failures.cooldown_seconds:.0f} last={exc.code}"
                )
            raise
        self.failures.record_success(symbol)
        self._observe(symbol, quote.source, None)
        return quote

    def _fetch(self, symbol: str, max_age_ms: float, allow_trade_fallback: bool) -> Quote:
        try:
            rows = self.broker.get_latest_quotes([symbol])
            row = rows.get(symbol)
            if not row:
                raise NoData(symbol, "no quote returned")
            return self._build(symbol, row.get("bid"), row.get("ask"), row.get("timestamp"), "quote", max_age_ms)
        except MarketDataCooldown:
            raise
        except (QuoteError, NetworkError, HttpError) as exc:
            if not allow_trade_fallback:
                raise
            primary_error = exc

        logger.debug(f"Quote unusable for {symbol} ({primary_error.code}); trying latest trade")
        try:
            trades = self.broker.get_latest_trades([symbol])
            trade = trades.get(symbol)
            price = trade.get("price") if trade else None
            if not price or price <= 0:
                raise NoData(symbol, "no trade returned")
            quote = self._build(symbol, price, price, trade.get("timestamp"), "trade", max_age_ms)
        except MarketDataCooldown:
            raise
        except (QuoteError, NetworkError, HttpError) as exc:
            if isinstance(exc, (StaleQuote, AbsurdQuoteAge)):
                raise
            raise primary_error from exc
        logger.info(f"Using trade-price quote for {symbol} @ {quote.mid}")
        return quote

    def _build(self, symbol: str, bid: Any, ask: Any, raw_ts: Any, source: str, max_age_ms: float) -> Quote:
        try:
            bid_f, ask_f = float(bid), float(ask)
        except (TypeError, ValueError):
            raise InvalidQuote(symbol, f"unparseable bid/ask ({bid!r}, {ask!r})")
        ts_ms = normalize_timestamp_ms(raw_ts)
        if ts_ms is None:
            raise InvalidQuote(symbol, f"missing or unparseable timestamp {raw_ts!r}")
        now = self._now_ms()
        age = compute_age_ms(now, ts_ms)
        if age is None or age > self.absurd_age_ms:
            raise AbsurdQuoteAge(symbol, raw_ts)

        quote = Quote(symbol=symbol, bid=bid_f, ask=ask_f, observed_at_ms=ts_ms, source=source)
        with self._lock:
            self._last_known[symbol] = quote
        if age > max_age_ms:
            raise StaleQuote(symbol, age, max_age_ms)
        with self._lock:
            self._cache[symbol] = _CachedQuote(quote=quote, fetched_at_ms=now)
        return quote

    def _observe(self, symbol: str, source: Optional[str], failure: Optional[str]) -> None:
        with self._lock:
            self._last_observed[symbol] = {
                "at_ms": self._now_ms(),
                "source": source,
                "failure": failure,
            }

    def _record_failure_metric(self, code: str) -> None:
        if self.metrics is not None:
            self.metrics.record_quote_failure(code)
