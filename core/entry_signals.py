"""
Core: Entry Signals

Decides, per symbol, whether conditions justify opening a position.

Gates run in order and short-circuit on the first failure; each failure
records a SkipReason:
    market clock (equities) → quote → spread → order book depth/impact →
    bars → volatility / stop / probability → expected value

evaluate() never raises; every upstream failure becomes a skip reason.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging
import math
import threading
import time

from core.exceptions import QuoteError, TradingError
from core.pricing import PricingConfig, entry_fee_bps_for_order, plan_exit, round_up_to_tick
from core.quotes import Quote
from infra.symbols import is_equity, normalize_symbol

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    """Structured skip conditions. These are outcomes, not errors."""
    MARKET_CLOSED = "market_closed"
    QUOTE_UNAVAILABLE = "quote_unavailable"
    SPREAD_GATE = "spread_gate"
    ORDERBOOK_UNAVAILABLE = "orderbook_unavailable"
    INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
    IMPACT_TOO_HIGH = "impact_too_high"
    INSUFFICIENT_BARS = "insufficient_bars"
    EV_GUARD = "ev_guard"
    NOTIONAL_TOO_SMALL = "notional_too_small"
    EXISTING_ENTRY_INTENT = "existing_entry_intent"
    ALREADY_TRACKED = "already_tracked"
    MAX_ACTIVE_SYMBOLS = "max_active_symbols"
    ENTRIES_HALTED = "entries_halted"
    ACCOUNT_UNAVAILABLE = "account_unavailable"
    ENTRY_NOT_FILLED = "entry_not_filled"
    ENTRY_REJECTED = "entry_rejected"


@dataclass
class EntrySignal:
    """Result of one evaluation; recomputed every scan, never persisted."""
    symbol: str
    ready: bool
    reason: Optional[str] = None
    required_gross_exit_bps: float = 0.0
    stop_loss_bps: float = 0.0
    expected_value_bps: float = 0.0
    probability: float = 0.0
    spread_bps: float = 0.0
    volatility_bps: float = 0.0
    entry_limit_price: Optional[float] = None
    quote: Optional[Quote] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SymbolStats:
    """EWMA estimates carried across scans."""
    ewma_spread_bps: Optional[float] = None
    ewma_slippage_bps: Optional[float] = None
    ewma_variance: Optional[float] = None
    last_bar_ts: Optional[str] = None
    last_close: Optional[float] = None
    samples: int = 0


@dataclass
class EntryConfig:
    max_spread_bps: float = 25.0
    quote_max_age_ms: float = 30000.0
    orderbook_gate_enabled: bool = True
    depth_band_bps: float = 50.0
    min_depth_usd: float = 5000.0
    impact_reference_notional_usd: float = 1000.0
    max_impact_bps: float = 15.0
    bars_timeframe: str = "1Min"
    bars_limit: int = 60
    min_bars: int = 20
    vol_half_life_bars: float = 20.0
    horizon_bars: float = 30.0
    spread_ewma_alpha: float = 0.2
    slippage_ewma_alpha: float = 0.2
    stop_vol_multiplier: float = 2.0
    min_stop_bps: float = 50.0
    max_stop_bps: float = 500.0
    momentum_lookback: int = 10
    ev_guard_enabled: bool = True
    min_ev_bps: float = 0.0
    entry_order_type: str = "limit"
    entry_time_in_force: str = "gtc"

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "EntryConfig":
        cfg = (policy or {}).get("entry", {}) or {}
        defaults = cls()
        values = {}
        for name in defaults.__dataclass_fields__:
            if name not in cfg:
                continue
            current = getattr(defaults, name)
            if isinstance(current, bool):
                values[name] = bool(cfg[name])
            elif isinstance(current, int):
                values[name] = int(cfg[name])
            elif isinstance(current, float):
                values[name] = float(cfg[name])
            else:
                values[name] = cfg[name]
        return cls(**values)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def ewma_variance(returns: List[float], half_life: float, seed: Optional[float] = None) -> Optional[float]:
    """Exponentially weighted variance of log returns (zero-mean)."""
    if not returns and seed is None:
        return None
    decay = 0.5 ** (1.0 / max(half_life, 1e-9))
    var = seed
    for r in returns:
        var = r * r if var is None else decay * var + (1.0 - decay) * r * r
    return var


def barrier_probability(profit_bps: float, stop_bps: float) -> float:
    """Driftless probability of touching +profit before -stop, clamped to [0.05, 0.95]."""
    total = profit_bps + stop_bps
    if total <= 0:
        return 0.5
    return _clamp(stop_bps / total, 0.05, 0.95)


def depth_within_band(levels, reference: float, band_bps: float, side: str) -> float:
    """USD notional resting within ``band_bps`` of ``reference``."""
    if side == "ask":
        limit = reference * (1.0 + band_bps / 10000.0)
        return sum(price * size for price, size in levels if price <= limit)
    limit = reference * (1.0 - band_bps / 10000.0)
    return sum(price * size for price, size in levels if price >= limit)


def vwap_impact_bps(asks, notional_usd: float) -> float:
    """Walk the ask side until ``notional_usd`` is filled; VWAP vs best ask in bps."""
    if not asks or notional_usd <= 0:
        return float("inf")
    best = asks[0][0]
    filled_notional = 0.0
    filled_qty = 0.0
    for price, size in asks:
        take = min(price * size, notional_usd - filled_notional)
        filled_notional += take
        filled_qty += take / price
        if filled_notional >= notional_usd - 1e-9:
            break
    if filled_notional < notional_usd - 1e-9 or filled_qty <= 0:
        return float("inf")
    vwap = filled_notional / filled_qty
    return (vwap - best) / best * 10000.0


class EntrySignalEngine:
    """
    Entry gate pipeline.

    Usage:
        engine = EntrySignalEngine(broker, quotes, policy)
        signal = engine.evaluate("BTC/USD")
        if signal.ready:
            executor.open_position(signal)
    """

    def __init__(self, broker, quotes, policy: Optional[Dict[str, Any]] = None,
                 market_clock: Optional[Callable[[], Dict[str, Any]]] = None,
                 metrics=None, clock: Callable[[], float] = time.time):
        policy = policy or {}
        self.broker = broker
        self.quotes = quotes
        self.config = EntryConfig.from_policy(policy)
        self.pricing = PricingConfig.from_policy(policy)
        self.market_clock = market_clock or broker.get_clock
        self.metrics = metrics
        self.clock = clock
        self._stats: Dict[str, SymbolStats] = {}
        self._lock = threading.Lock()
        self.last_scan_at_ms: Optional[float] = None
        self.skip_counts: Counter = Counter()
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def stats_for(self, symbol: str) -> SymbolStats:
        with self._lock:
            stats = self._stats.get(symbol)
            if stats is None:
                stats = SymbolStats()
                self._stats[symbol] = stats
            return stats

    def record_slippage(self, symbol: str, slippage_bps: float) -> None:
        """Feed a realized entry slippage observation into the symbol's EWMA."""
        stats = self.stats_for(normalize_symbol(symbol))
        alpha = self.config.slippage_ewma_alpha
        with self._lock:
            if stats.ewma_slippage_bps is None:
                stats.ewma_slippage_bps = max(0.0, slippage_bps)
            else:
                stats.ewma_slippage_bps = alpha * max(0.0, slippage_bps) + (1 - alpha) * stats.ewma_slippage_bps

    def _skip(self, symbol: str, reason: SkipReason, quote: Optional[Quote] = None, **metadata) -> EntrySignal:
        return EntrySignal(
            symbol=symbol,
            ready=False,
            reason=reason.value,
            quote=quote,
            spread_bps=quote.spread_bps if quote else 0.0,
            metadata=metadata,
        )

    def evaluate(self, symbol: str) -> EntrySignal:
        symbol = normalize_symbol(symbol)
        try:
            return self._evaluate(symbol)
        except TradingError as exc:
            logger.warning(f"Entry evaluation failed for {symbol}: {exc}")
            return self._skip(symbol, SkipReason.QUOTE_UNAVAILABLE, error=exc.code)
        except (ValueError, ZeroDivisionError) as exc:
            logger.warning(f"Entry evaluation failed for {symbol}: {exc}")
            return self._skip(symbol, SkipReason.INSUFFICIENT_BARS, error=str(exc))

    def _evaluate(self, symbol: str) -> EntrySignal:
        cfg = self.config

        # 0. Market clock (equities only)
        if is_equity(symbol):
            try:
                market = self.market_clock() or {}
            except TradingError as exc:
                return self._skip(symbol, SkipReason.MARKET_CLOSED, error=exc.code)
            if not market.get("is_open", False):
                return self._skip(symbol, SkipReason.MARKET_CLOSED)

        # 1. Quote
        try:
            quote = self.quotes.get_quote(symbol, max_age_ms=cfg.quote_max_age_ms)
        except QuoteError as exc:
            return self._skip(symbol, SkipReason.QUOTE_UNAVAILABLE, error=exc.code)
        except TradingError as exc:
            logger.debug(f"Quote fetch failed for {symbol}: {exc}")
            return self._skip(symbol, SkipReason.QUOTE_UNAVAILABLE, error=exc.code)

        # 2. Spread
        spread = quote.spread_bps
        if spread > cfg.max_spread_bps:
            return self._skip(symbol, SkipReason.SPREAD_GATE, quote,
                              spread_bps=round(spread, 2), max_spread_bps=cfg.max_spread_bps)

        # 3. Order book (crypto only; equities have no book feed)
        imbalance = 0.0
        book_meta: Dict[str, Any] = {}
        if cfg.orderbook_gate_enabled and not is_equity(symbol):
            try:
                book = self.broker.get_orderbook(symbol)
            except TradingError as exc:
                return self._skip(symbol, SkipReason.ORDERBOOK_UNAVAILABLE, quote, error=exc.code)
            if book is None:
                return self._skip(symbol, SkipReason.ORDERBOOK_UNAVAILABLE, quote, error="empty_book")
            bid_depth = depth_within_band(book.bids, quote.mid, cfg.depth_band_bps, "bid")
            ask_depth = depth_within_band(book.asks, quote.mid, cfg.depth_band_bps, "ask")
            book_meta = {"bid_depth_usd": round(bid_depth, 2), "ask_depth_usd": round(ask_depth, 2)}
            if min(bid_depth, ask_depth) < cfg.min_depth_usd:
                return self._skip(symbol, SkipReason.INSUFFICIENT_LIQUIDITY, quote,
                                  min_depth_usd=cfg.min_depth_usd, **book_meta)
            impact = vwap_impact_bps(book.asks, cfg.impact_reference_notional_usd)
            if impact > cfg.max_impact_bps:
                return self._skip(symbol, SkipReason.IMPACT_TOO_HIGH, quote,
                                  impact_bps=impact, max_impact_bps=cfg.max_impact_bps)
            book_meta["impact_bps"] = round(impact, 2)
            if bid_depth + ask_depth > 0:
                imbalance = (bid_depth - ask_depth) / (bid_depth + ask_depth)

        # 4. Bars
        try:
            bars = self.broker.get_bars(symbol, cfg.bars_timeframe, cfg.bars_limit)
        except TradingError as exc:
            return self._skip(symbol, SkipReason.INSUFFICIENT_BARS, quote, error=exc.code)
        closes = [bar.close for bar in bars if bar.close > 0]
        if len(closes) < cfg.min_bars:
            return self._skip(symbol, SkipReason.INSUFFICIENT_BARS, quote,
                              bars=len(closes), min_bars=cfg.min_bars)

        # 5. EWMA estimates carried across scans
        stats = self.stats_for(symbol)
        with self._lock:
            prior_spread = stats.ewma_spread_bps
            new_bars = bars
            if stats.last_bar_ts is not None:
                new_bars = [bar for bar in bars if (bar.timestamp or "") > stats.last_bar_ts]
            prev_close = stats.last_close if stats.last_bar_ts is not None else None
            returns = []
            for bar in new_bars:
                if bar.close <= 0:
                    continue
                if prev_close:
                    returns.append(math.log(bar.close / prev_close))
                prev_close = bar.close
            stats.ewma_variance = ewma_variance(returns, cfg.vol_half_life_bars, stats.ewma_variance)
            if new_bars:
                stats.last_bar_ts = new_bars[-1].timestamp
                stats.last_close = new_bars[-1].close
            stats.samples += len(returns)
            alpha = cfg.spread_ewma_alpha
            stats.ewma_spread_bps = spread if prior_spread is None else alpha * spread + (1 - alpha) * prior_spread
            slippage = stats.ewma_slippage_bps if stats.ewma_slippage_bps is not None else self.pricing.slippage_bps
            variance = stats.ewma_variance or 0.0

        vol_bps = math.sqrt(variance) * 10000.0
        horizon_vol_bps = vol_bps * math.sqrt(cfg.horizon_bars)

        # 6. Required exit, stop distance, barrier probability
        entry_fee = entry_fee_bps_for_order(
            cfg.entry_order_type, cfg.entry_time_in_force,
            maker_fee_bps=self.pricing.maker_fee_bps, taker_fee_bps=self.pricing.taker_fee_bps,
        )
        plan = plan_exit(quote.ask, self.pricing, entry_fee_bps=entry_fee, current_spread_bps=spread,
                         tick_size=self.pricing.tick_size(not is_equity(symbol)))
        required = plan.required_exit_bps
        stop_bps = _clamp(cfg.stop_vol_multiplier * horizon_vol_bps, cfg.min_stop_bps, cfg.max_stop_bps)
        base_p = barrier_probability(required, stop_bps)

        micro_bias = 0.0
        if prior_spread and prior_spread > 0:
            micro_bias = _clamp(0.08 * (prior_spread - spread) / prior_spread, -0.08, 0.08)

        momentum_bias = 0.0
        window = closes[-cfg.momentum_lookback:]
        if len(window) >= 3:
            mean = sum(window) / len(window)
            std = math.sqrt(sum((c - mean) ** 2 for c in window) / len(window))
            if std > 0:
                momentum_bias = _clamp(0.05 * (closes[-1] - mean) / std, -0.15, 0.15)

        imbalance_bias = _clamp(imbalance * 0.05, -0.05, 0.05)
        probability = _clamp(base_p + micro_bias + momentum_bias + imbalance_bias, 0.05, 0.95)

        # 7. Expected value
        ev = (
            probability * required
            - (1.0 - probability) * stop_bps
            - plan.fee_bps_round_trip
            - spread
            - slippage
        )
        metadata = {
            "entry_fee_bps": entry_fee,
            "exit_fee_bps": plan.exit_fee_bps,
            "fee_bps_round_trip": plan.fee_bps_round_trip,
            "target_price": plan.target_price,
            "slippage_bps": round(slippage, 3),
            "base_probability": round(base_p, 4),
            "micro_bias": round(micro_bias, 4),
            "momentum_bias": round(momentum_bias, 4),
            "imbalance_bias": round(imbalance_bias, 4),
            "bars": len(closes),
            **book_meta,
        }
        if cfg.ev_guard_enabled and ev < cfg.min_ev_bps:
            signal = self._skip(symbol, SkipReason.EV_GUARD, quote, ev_bps=round(ev, 2), min_ev_bps=cfg.min_ev_bps)
            signal.expected_value_bps = ev
            signal.probability = probability
            signal.required_gross_exit_bps = required
            signal.stop_loss_bps = stop_bps
            signal.volatility_bps = vol_bps
            signal.metadata.update(metadata)
            return signal

        return EntrySignal(
            symbol=symbol,
            ready=True,
            required_gross_exit_bps=required,
            stop_loss_bps=stop_bps,
            expected_value_bps=ev,
            probability=probability,
            spread_bps=spread,
            volatility_bps=vol_bps,
            entry_limit_price=round_up_to_tick(quote.ask, self.pricing.tick_size(not is_equity(symbol))),
            quote=quote,
            metadata=metadata,
        )

    def scan(self, symbols: List[str]) -> List[EntrySignal]:
        """Evaluate a universe; returns ready signals, best expected value first."""
        symbols = [normalize_symbol(s) for s in symbols if normalize_symbol(s)]
        self.quotes.prefetch(symbols)
        ready: List[EntrySignal] = []
        for symbol in symbols:
            signal = self.evaluate(symbol)
            self.last_results[symbol] = {
                "ready": signal.ready,
                "reason": signal.reason,
                "ev_bps": round(signal.expected_value_bps, 2),
                "spread_bps": round(signal.spread_bps, 2),
            }
            if signal.ready:
                ready.append(signal)
                continue
            self.record_skip(symbol, signal.reason, signal.metadata)
        self.last_scan_at_ms = self.clock() * 1000.0
        ready.sort(key=lambda s: s.expected_value_bps, reverse=True)
        logger.info(f"Entry scan complete: {len(ready)}/{len(symbols)} ready")
        return ready

    def record_skip(self, symbol: str, reason: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> None:
        reason = reason or "unknown"
        self.skip_counts[reason] += 1
        details = " ".join(f"{k}={v}" for k, v in sorted((metadata or {}).items()))
        logger.info("ENTRY_SKIP symbol=%s reason=%s %s", symbol, reason, details)
        if self.metrics is not None:
            self.metrics.record_entry_skip(reason)
