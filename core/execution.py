"""
Core: Order Lifecycle Engine

Entry submission with idempotency, exit attachment and per-tick exit
management for every tracked symbol.

Invariant: while an ExitState exists for a symbol, the symbol either has a
live exit order or the next management tick is acquiring one. A resting exit
is only cancelled as part of an immediate replace or taker flip.

Client order ids follow ``{tag}-{compact}-{side}-{intent}-{bucket}-{nonce}``;
the prefix up to ``{intent}-`` identifies an existing entry intent on
resubmission.
"""

import uuid
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
import logging

from core.entry_signals import EntryConfig, EntrySignal, SkipReason
from core.exceptions import (
    AbsurdQuoteAge,
    HttpError,
    NetworkError,
    OrderRejected,
    QuoteError,
    StaleQuote,
    TradingError,
)
from core.exit_state import ExitState, RealizedPnL, SymbolBook, now_ms
from core.lifecycle import (
    ACTION_EVENTS,
    Effect,
    Event,
    ExitAction,
    ExitDecision,
    LifecycleState,
    ManageConfig,
    TickInputs,
    decide_exit_action,
    transition,
)
from core.order_state import (
    Filled,
    OrderStatus,
    Terminal,
    TimedOut,
    avg_fill_price,
    filled_qty,
    map_broker_status,
    poll_order,
    safe_cancel,
)
from core.pricing import (
    PricingConfig,
    entry_fee_bps_for_order,
    plan_exit,
    round_down_to_increment,
    round_up_to_tick,
)
from core.quotes import Quote, normalize_timestamp_ms
from infra.cache import ReadThroughCache
from infra.symbols import is_crypto, normalize_symbol, to_broker_symbol

logger = logging.getLogger(__name__)


@dataclass
class EntryResult:
    """Outcome of one open_position() call"""
    symbol: str
    status: str  # "filled" | "skipped" | "failed" | "dry_run"
    reason: Optional[str] = None
    order_id: Optional[str] = None
    client_order_id: Optional[str] = None
    filled_qty: float = 0.0
    avg_price: Optional[float] = None
    state: Optional[ExitState] = None


@dataclass
class SizingConfig:
    portfolio_fraction: float = 0.10
    min_notional_usd: float = 10.0
    min_qty: float = 0.0
    crypto_qty_increment: float = 1e-8
    equity_qty_increment: float = 1.0
    max_active_symbols: int = 5

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "SizingConfig":
        cfg = (policy or {}).get("sizing", {}) or {}
        return cls(
            portfolio_fraction=float(cfg.get("portfolio_fraction", 0.10)),
            min_notional_usd=float(cfg.get("min_notional_usd", 10.0)),
            min_qty=float(cfg.get("min_qty", 0.0)),
            crypto_qty_increment=float(cfg.get("crypto_qty_increment", 1e-8)),
            equity_qty_increment=float(cfg.get("equity_qty_increment", 1.0)),
            max_active_symbols=int(cfg.get("max_active_symbols", 5)),
        )


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class OrderLifecycleEngine:
    """
    Per-symbol order lifecycle.

    Responsibilities:
    - open_position: idempotent entry, sizing, fill wait, market fallback
    - attach_exit: conservative fill basis, resting GTC limit sell
    - manage_tick: stale-quote ladder, order refresh, exit decision + effects
    - adopt / ensure_exit_order: used by reconciliation to restore coverage

    Safety:
    - DRY_RUN mode never submits orders
    - Cancel-without-replace of a protective exit is refused
    """

    def __init__(self, broker, quotes, policy: Optional[Dict[str, Any]] = None, *,
                 mode: str = "PAPER", book: Optional[SymbolBook] = None,
                 entry_signals=None, metrics=None,
                 clock: Callable[[], float] = now_ms,
                 sleep: Callable[[float], None] = time.sleep,
                 monotonic: Callable[[], float] = time.monotonic):
        self.mode = mode.upper()
        self.broker = broker
        self.quotes = quotes
        self.policy = policy or {}
        self.book = book or SymbolBook(clock=clock)
        self.entry_signals = entry_signals
        self.metrics = metrics
        self.clock = clock
        self.sleep = sleep
        self.monotonic = monotonic

        lifecycle_cfg = self.policy.get("lifecycle", {}) or {}
        quotes_cfg = self.policy.get("quotes", {}) or {}
        cache_cfg = self.policy.get("cache", {}) or {}

        self.pricing = PricingConfig.from_policy(self.policy)
        self.sizing = SizingConfig.from_policy(self.policy)
        self.manage = ManageConfig.from_policy(self.policy)

        self.client_tag = str(lifecycle_cfg.get("client_order_tag", "lct")).lower().replace("-", "")
        self.intent_window_seconds = float(lifecycle_cfg.get("intent_window_seconds", 300))
        self.in_flight_ttl_ms = float(lifecycle_cfg.get("in_flight_ttl_seconds", 180)) * 1000.0
        entry_cfg = EntryConfig.from_policy(self.policy)
        self.entry_order_type = entry_cfg.entry_order_type
        self.entry_time_in_force = entry_cfg.entry_time_in_force
        self.equity_time_in_force = lifecycle_cfg.get("equity_time_in_force", "day")
        self.fill_timeout_seconds = float(lifecycle_cfg.get("fill_timeout_seconds", 60))
        self.fill_poll_interval_seconds = float(lifecycle_cfg.get("fill_poll_interval_seconds", 3))
        self.market_fallback_on_timeout = bool(lifecycle_cfg.get("market_fallback_on_timeout", True))
        self.market_fallback_max_spread_bps = float(lifecycle_cfg.get("market_fallback_max_spread_bps", 25))
        self.taker_fill_timeout_seconds = float(lifecycle_cfg.get("taker_fill_timeout_seconds", 5))
        self.cancellation_policy = lifecycle_cfg.get("cancellation_policy", "replace_only")
        self.quote_max_age_ms = float(quotes_cfg.get("max_quote_age_ms", 30000))
        self.last_known_max_age_ms = float(quotes_cfg.get("last_known_max_age_ms", 120000))

        self.account_cache = ReadThroughCache("account", float(cache_cfg.get("account_ttl_seconds", 5)))
        self.positions_cache = ReadThroughCache("positions", float(cache_cfg.get("positions_ttl_seconds", 2)))
        self.orders_cache = ReadThroughCache("open_orders", float(cache_cfg.get("orders_ttl_seconds", 2)))

        # Set by the reconciler; returns a reason string while entries are halted
        self.entry_gate: Optional[Callable[[], Optional[str]]] = None
        self.asset_info: Dict[str, Dict[str, Any]] = {}
        self.realized: Deque[RealizedPnL] = deque(maxlen=500)
        self.pnl_listeners: List[Callable[[RealizedPnL], None]] = []

        logger.info(
            f"Initialized OrderLifecycleEngine (mode={self.mode}, fraction={self.sizing.portfolio_fraction}, "
            f"max_active={self.sizing.max_active_symbols}, entry={self.entry_order_type}/{self.entry_time_in_force}, "
            f"fill_timeout={self.fill_timeout_seconds}s, cancel_policy={self.cancellation_policy})"
        )

    # ===== Shared reads (cached, single-flight) =====
    def get_account(self, max_age_seconds: Optional[float] = None) -> Dict[str, Any]:
        return self.account_cache.get("account", self.broker.get_account, max_age_seconds=max_age_seconds)

    def list_positions(self, max_age_seconds: Optional[float] = None) -> List[Dict[str, Any]]:
        return self.positions_cache.get("all", self.broker.list_positions, max_age_seconds=max_age_seconds)

    def list_open_orders(self, max_age_seconds: Optional[float] = None) -> List[Dict[str, Any]]:
        return self.orders_cache.get(
            "open", lambda: self.broker.list_orders(status="open", nested=True),
            max_age_seconds=max_age_seconds,
        )

    def _invalidate_order_views(self) -> None:
        self.orders_cache.invalidate()
        self.positions_cache.invalidate()

    # ===== Identifiers =====
    def client_order_prefix(self, symbol: str, side: str, intent: str) -> str:
        return f"{self.client_tag}-{to_broker_symbol(symbol).lower()}-{side.lower()}-{intent}-"

    def make_client_order_id(self, symbol: str, side: str, intent: str) -> str:
        bucket = int(self.clock() / 1000.0 // self.intent_window_seconds)
        nonce = uuid.uuid4().hex[:8]
        return f"{self.client_order_prefix(symbol, side, intent)}{bucket}-{nonce}"

    def _find_entry_intent(self, symbol: str, orders: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        prefix = self.client_order_prefix(symbol, "buy", "entry")
        for order in orders:
            if (order.get("client_order_id") or "").startswith(prefix):
                return order
        return None

    # ===== Instrument constraints =====
    def _tick_size(self, symbol: str) -> float:
        info = self.asset_info.get(symbol) or {}
        tick = _as_float(info.get("price_increment"), 0.0)
        return tick if tick > 0 else self.pricing.tick_size(is_crypto(symbol))

    def _qty_increment(self, symbol: str) -> float:
        info = self.asset_info.get(symbol) or {}
        inc = _as_float(info.get("min_trade_increment"), 0.0)
        if inc > 0:
            return inc
        if not is_crypto(symbol) and info.get("fractionable"):
            return 1e-9
        return self.sizing.crypto_qty_increment if is_crypto(symbol) else self.sizing.equity_qty_increment

    def _min_qty(self, symbol: str) -> float:
        info = self.asset_info.get(symbol) or {}
        return max(self.sizing.min_qty, _as_float(info.get("min_order_size"), 0.0))

    def _time_in_force(self, symbol: str, crypto_tif: str) -> str:
        return crypto_tif if is_crypto(symbol) else self.equity_time_in_force

    # ===== Entry =====
    def _skip(self, symbol: str, reason: SkipReason, **kwargs) -> EntryResult:
        logger.info("ENTRY_SKIP symbol=%s reason=%s", symbol, reason.value)
        if self.metrics is not None:
            self.metrics.record_entry_skip(reason.value)
        return EntryResult(symbol=symbol, status="skipped", reason=reason.value, **kwargs)

    def _record_entry(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_entry(outcome)

    def active_symbol_count(self) -> int:
        return len(self.book.active_symbols())

    def open_position(self, signal: EntrySignal) -> EntryResult:
        """
        Open a position for a ready signal.

        Never raises for expected conditions; duplicate attempts for the same
        symbol observe ``existing_entry_intent``.
        """
        symbol = normalize_symbol(signal.symbol)
        if not signal.ready:
            # Already logged and counted by the signal engine
            return EntryResult(symbol=symbol, status="skipped", reason=signal.reason)

        if self.entry_gate is not None:
            halted = self.entry_gate()
            if halted:
                return self._skip(symbol, SkipReason.ENTRIES_HALTED)

        if self.book.get_state(symbol) is not None:
            return self._skip(symbol, SkipReason.ALREADY_TRACKED)

        if not self.book.claim_in_flight(symbol, "entry", self.in_flight_ttl_ms):
            return self._skip(symbol, SkipReason.EXISTING_ENTRY_INTENT)

        try:
            active = [s for s in self.book.active_symbols() if s != symbol]
            if len(active) >= self.sizing.max_active_symbols:
                return self._skip(symbol, SkipReason.MAX_ACTIVE_SYMBOLS)
            return self._open_position(symbol, signal)
        finally:
            self.book.release_in_flight(symbol)

    def _open_position(self, symbol: str, signal: EntrySignal) -> EntryResult:
        try:
            open_orders = self.list_open_orders(max_age_seconds=0)
            positions = self.list_positions(max_age_seconds=0)
            account = self.get_account()
        except TradingError as exc:
            logger.warning(f"Entry for {symbol} aborted; account data unavailable: {exc}")
            return self._skip(symbol, SkipReason.ACCOUNT_UNAVAILABLE)

        existing = self._find_entry_intent(symbol, open_orders)
        if existing is not None:
            logger.info(
                "Entry intent already open for %s (client_order_id=%s)", symbol, existing.get("client_order_id")
            )
            return self._skip(symbol, SkipReason.EXISTING_ENTRY_INTENT, order_id=existing.get("id"))

        for position in positions:
            if position.get("symbol") == symbol and _as_float(position.get("qty")) > 0:
                return self._skip(symbol, SkipReason.ALREADY_TRACKED)

        # Sizing: fixed fraction of portfolio value, capped by buying power
        portfolio_value = _as_float(account.get("portfolio_value") or account.get("equity"))
        buying_power = _as_float(
            account.get("non_marginable_buying_power") if is_crypto(symbol) else account.get("buying_power"),
            _as_float(account.get("buying_power")),
        )
        if buying_power <= 0:
            buying_power = _as_float(account.get("cash"))
        notional = min(portfolio_value * self.sizing.portfolio_fraction, buying_power)
        price = signal.entry_limit_price or (signal.quote.ask if signal.quote else 0.0)
        if price <= 0:
            return self._skip(symbol, SkipReason.QUOTE_UNAVAILABLE)
        qty = round_down_to_increment(notional / price, self._qty_increment(symbol))
        if notional < self.sizing.min_notional_usd or qty <= 0 or qty < self._min_qty(symbol):
            logger.debug(f"Sizing for {symbol}: notional=${notional:.2f} qty={qty} min_qty={self._min_qty(symbol)}")
            return self._skip(symbol, SkipReason.NOTIONAL_TOO_SMALL)

        if self.mode == "DRY_RUN":
            logger.info(f"DRY_RUN: would buy {qty} {symbol} @ {price} (${notional:.2f})")
            self._record_entry("dry_run")
            return EntryResult(symbol=symbol, status="dry_run", filled_qty=0.0, avg_price=price)

        lifecycle, _ = transition(LifecycleState.NO_POSITION, Event.SUBMIT_ENTRY)
        order_type = self.entry_order_type
        tif = self._time_in_force(symbol, self.entry_time_in_force)
        client_id = self.make_client_order_id(symbol, "buy", "entry")
        order = self._submit(
            symbol, "buy", qty, order_type=order_type, time_in_force=tif,
            limit_price=price if order_type == "limit" else None, client_order_id=client_id,
        )
        if order is None:
            transition(lifecycle, Event.ENTRY_REJECTED)
            self._record_entry("rejected")
            return EntryResult(symbol=symbol, status="failed", reason=SkipReason.ENTRY_REJECTED.value,
                               client_order_id=client_id)

        order_id = order.get("id")
        logger.info(
            "ENTRY_SUBMITTED symbol=%s order_id=%s client_order_id=%s qty=%s type=%s limit=%s ev_bps=%.2f",
            symbol, order_id, client_id, qty, order_type, price, signal.expected_value_bps,
        )
        lifecycle, _ = transition(lifecycle, Event.ENTRY_ACCEPTED)

        result = poll_order(
            self.broker, order_id,
            timeout_seconds=self.fill_timeout_seconds,
            interval_seconds=self.fill_poll_interval_seconds,
            sleep=self.sleep, clock=self.monotonic,
        )
        fill_qty, fill_price, fill_order = self._fill_from_poll(result)

        if fill_qty <= 0 and isinstance(result, TimedOut) and self.market_fallback_on_timeout and order_type != "market":
            fallback = self._market_fallback(symbol, qty)
            if fallback is not None:
                fill_qty, fill_price, fill_order = fallback
                order_type, tif = "market", self._time_in_force(symbol, "gtc")

        if fill_qty <= 0 or not fill_price:
            event = Event.ENTRY_TIMED_OUT if isinstance(result, TimedOut) else Event.ENTRY_REJECTED
            transition(lifecycle, event)
            self._record_entry("not_filled")
            logger.info("ENTRY_SKIP symbol=%s reason=%s order_id=%s",
                        symbol, SkipReason.ENTRY_NOT_FILLED.value, order_id)
            return EntryResult(symbol=symbol, status="skipped", reason=SkipReason.ENTRY_NOT_FILLED.value,
                               order_id=order_id, client_order_id=client_id)

        if fill_qty < qty:
            logger.info(f"Partial entry fill for {symbol}: {fill_qty}/{qty}; managing the smaller position")

        transition(lifecycle, Event.ENTRY_FILLED)
        self._record_entry("filled")
        if self.entry_signals is not None and signal.quote is not None and signal.quote.ask > 0:
            self.entry_signals.record_slippage(symbol, (fill_price - signal.quote.ask) / signal.quote.ask * 10000.0)

        state = self.attach_exit(
            symbol, fill_qty, fill_price,
            entry_order=fill_order or order,
            order_type=order_type, time_in_force=tif,
            stop_loss_bps=signal.stop_loss_bps or None,
            spread_bps=signal.spread_bps,
        )
        return EntryResult(
            symbol=symbol, status="filled", order_id=(fill_order or order).get("id"),
            client_order_id=client_id, filled_qty=fill_qty, avg_price=fill_price, state=state,
        )

    @staticmethod
    def _fill_from_poll(result) -> Tuple[float, Optional[float], Optional[Dict[str, Any]]]:
        if isinstance(result, Filled):
            return result.filled_qty, result.avg_price, result.order
        if isinstance(result, (Terminal, TimedOut)) and result.filled_qty > 0:
            return result.filled_qty, avg_fill_price(result.order), result.order
        return 0.0, None, None

    def _market_fallback(self, symbol: str, qty: float) -> Optional[Tuple[float, Optional[float], Dict[str, Any]]]:
        """After a limit entry timed out, buy at market only if the spread is still acceptable."""
        try:
            quote = self.quotes.get_quote(symbol, max_age_ms=self.quote_max_age_ms)
        except TradingError as exc:
            logger.info(f"Market fallback skipped for {symbol}: quote unavailable ({exc.code})")
            return None
        if quote.spread_bps > self.market_fallback_max_spread_bps:
            logger.info(f"Market fallback skipped for {symbol}: spread {quote.spread_bps:.1f}bps too wide")
            return None
        client_id = self.make_client_order_id(symbol, "buy", "entry")
        order = self._submit(symbol, "buy", qty, order_type="market",
                             time_in_force=self._time_in_force(symbol, "gtc"), client_order_id=client_id)
        if order is None:
            return None
        result = poll_order(self.broker, order.get("id"), timeout_seconds=self.taker_fill_timeout_seconds,
                            interval_seconds=1.0, sleep=self.sleep, clock=self.monotonic)
        fill_qty, fill_price, fill_order = self._fill_from_poll(result)
        if fill_qty <= 0:
            return None
        logger.info(f"Market fallback filled {fill_qty} {symbol} @ {fill_price}")
        return fill_qty, fill_price, fill_order

    def _submit(self, symbol: str, side: str, qty: float, *, order_type: str, time_in_force: str,
                client_order_id: str, limit_price: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Submit an order; a lost response is resolved by client order id.

        Returns None when the broker rejected the order or it cannot be found.
        """
        try:
            order = self.broker.submit_order(
                symbol, side, qty, order_type=order_type, time_in_force=time_in_force,
                limit_price=limit_price, client_order_id=client_order_id,
            )
        except OrderRejected as exc:
            logger.warning(f"Order rejected: {side} {qty} {symbol} ({exc.message}, code={exc.broker_code})")
            return None
        except (NetworkError, HttpError) as exc:
            logger.warning(f"Order submit for {symbol} failed ({exc}); resolving by client id {client_order_id}")
            try:
                order = self.broker.get_order_by_client_id(client_order_id)
            except (NetworkError, HttpError) as lookup_exc:
                logger.warning(f"Client id lookup failed for {client_order_id}: {lookup_exc}")
                return None
            if order is None:
                return None
        finally:
            self._invalidate_order_views()
        return order

    # ===== Exit attachment =====
    def max_fill_price(self, order_id: Optional[str]) -> Optional[float]:
        """Highest fill price recorded for an order (conservative exit basis)."""
        if not order_id:
            return None
        try:
            fills = self.broker.list_activities("FILL")
        except (NetworkError, HttpError) as exc:
            logger.warning(f"Fill activities unavailable for {order_id}: {exc}")
            return None
        prices = [_as_float(f.get("price")) for f in fills if f.get("order_id") == order_id]
        prices = [p for p in prices if p > 0]
        return max(prices) if prices else None

    def attach_exit(self, symbol: str, qty: float, avg_price: float, *,
                    entry_order: Optional[Dict[str, Any]] = None,
                    order_type: str = "limit", time_in_force: str = "gtc",
                    stop_loss_bps: Optional[float] = None,
                    spread_bps: float = 0.0) -> ExitState:
        """
        Build and persist the ExitState for a filled entry, then rest the exit.

        The state is kept even when the sell submit fails; the next
        management tick re-acquires an order.
        """
        entry_order_id = (entry_order or {}).get("id")
        entry_fee = entry_fee_bps_for_order(
            order_type, time_in_force,
            maker_fee_bps=self.pricing.maker_fee_bps, taker_fee_bps=self.pricing.taker_fee_bps,
        )
        basis = max(avg_price, self.max_fill_price(entry_order_id) or 0.0)
        plan = plan_exit(basis, self.pricing, entry_fee_bps=entry_fee,
                         current_spread_bps=spread_bps, tick_size=self._tick_size(symbol))
        state = ExitState(
            symbol=symbol,
            qty=qty,
            entry_price=avg_price,
            effective_entry_price=basis,
            entry_time_ms=self.clock(),
            fee_bps_round_trip=plan.fee_bps_round_trip,
            required_exit_bps=plan.required_exit_bps,
            min_net_profit_bps=plan.min_net_profit_bps,
            target_price=plan.target_price,
            breakeven_price=plan.breakeven_price,
            entry_fee_bps=plan.entry_fee_bps,
            exit_fee_bps=plan.exit_fee_bps,
            entry_order_id=entry_order_id,
            stop_loss_bps=stop_loss_bps,
        )
        self.book.put_state(state)

        with self.book.locked(symbol, timeout=5.0) as slot:
            if slot is not None and state.sell_order_id is None:
                self._place_exit(state, plan.target_price, "attach")

        logger.info(
            "EXIT_ATTACHED symbol=%s qty=%s entry=%.6f basis=%.6f required_bps=%.2f target=%s breakeven=%s sell_order_id=%s",
            symbol, qty, avg_price, basis, plan.required_exit_bps, plan.target_price,
            plan.breakeven_price, state.sell_order_id,
        )
        self._update_tracked_gauge()
        return state

    def _place_exit(self, state: ExitState, limit_price: float, reason: str) -> bool:
        client_id = self.make_client_order_id(state.symbol, "sell", "exit")
        qty = round_down_to_increment(state.qty, self._qty_increment(state.symbol))
        order = self._submit(
            state.symbol, "sell", qty, order_type="limit",
            time_in_force=self._time_in_force(state.symbol, "gtc"),
            limit_price=limit_price, client_order_id=client_id,
        )
        if order is None:
            logger.warning(f"Exit order for {state.symbol} not placed ({reason}); retrying next tick")
            return False
        state.attach_sell_order(order.get("id"), limit_price, self.clock())
        logger.info(f"Exit order resting for {state.symbol}: {qty} @ {limit_price} ({reason})")
        return True

    def _reprice(self, state: ExitState, limit_price: float) -> bool:
        """PATCH replace first; fall back to cancel + immediate resubmit."""
        old_id = state.sell_order_id
        client_id = self.make_client_order_id(state.symbol, "sell", "exit")
        try:
            order = self.broker.replace_order(old_id, limit_price=limit_price, client_order_id=client_id)
        except NetworkError as exc:
            # Outcome unknown; next tick's order refresh resolves it
            logger.warning(f"Replace of {old_id} for {state.symbol} timed out: {exc}")
            return False
        except (OrderRejected, HttpError) as exc:
            logger.info(f"Replace of {old_id} refused ({exc}); falling back to cancel + resubmit")
            if not safe_cancel(self.broker, old_id):
                return False
            state.clear_sell_order()
            return self._place_exit(state, limit_price, "reprice_fallback")
        finally:
            self._invalidate_order_views()
        state.attach_sell_order(order.get("id"), limit_price, self.clock())
        return True

    # ===== Management =====
    def _tick_quote(self, state: ExitState) -> Tuple[Optional[Quote], bool, str]:
        """
        Stale-quote ladder. Returns (quote, conservative, note).

        1. get_quote (cache → quotes → trade fallback)
        2. on a stale/absurd classification: direct quotes-only re-fetch
        3. then the last known price within last_known_max_age_ms (conservative)
        4. otherwise no quote: skip the tick
        Any other quote failure holds the current order.
        """
        symbol = state.symbol
        try:
            return self.quotes.get_quote(symbol, max_age_ms=self.quote_max_age_ms), False, "fresh"
        except (StaleQuote, AbsurdQuoteAge) as exc:
            stale_code = exc.code
        except TradingError as exc:
            return None, False, f"quote_unavailable:{exc.code}"

        try:
            return self.quotes.fetch_direct(symbol, max_age_ms=self.quote_max_age_ms), False, "direct"
        except TradingError as exc:
            logger.debug(f"Direct quote re-fetch failed for {symbol}: {exc.code}")

        last = self.quotes.last_known(symbol, max_age_ms=self.last_known_max_age_ms)
        if last is None and state.last_bid and state.last_ask and state.last_quote_at_ms:
            if self.clock() - state.last_quote_at_ms <= self.last_known_max_age_ms:
                try:
                    last = Quote(symbol=symbol, bid=state.last_bid, ask=state.last_ask,
                                 observed_at_ms=state.last_quote_at_ms, source="state")
                except QuoteError:
                    last = None
        if last is not None:
            return last, True, "last_known"
        return None, False, f"stale_no_fallback:{stale_code}"

    def _refresh_sell_order(self, state: ExitState) -> Optional[Dict[str, Any]]:
        """
        Re-read the tracked exit order. Returns the filled order when the
        position closed; clears the reference on other terminal statuses.
        Lookup failures leave everything unchanged.
        """
        if not state.sell_order_id:
            return None
        try:
            order = self.broker.get_order(state.sell_order_id)
        except (NetworkError, HttpError) as exc:
            logger.warning(f"Exit order lookup failed for {state.symbol}: {exc}")
            return None
        if order is None:
            logger.warning(f"Exit order {state.sell_order_id} for {state.symbol} not found; clearing reference")
            state.apply(Event.EXIT_ORDER_LOST)
            state.clear_sell_order()
            return None

        status = map_broker_status(order.get("status"))
        if status == OrderStatus.FILLED:
            return order
        if status == OrderStatus.REPLACED and order.get("replaced_by"):
            state.sell_order_id = order.get("replaced_by")
            return None
        if status in (OrderStatus.CANCELED, OrderStatus.EXPIRED, OrderStatus.REJECTED,
                      OrderStatus.REPLACED, OrderStatus.FAILED):
            logger.info(f"Exit order {state.sell_order_id} for {state.symbol} is {status.value}; will re-place")
            state.apply(Event.EXIT_ORDER_LOST)
            state.clear_sell_order()
        return None

    def manage_tick(self, symbol: str) -> Optional[ExitDecision]:
        """
        One management tick for a symbol.

        Returns None when the tick was skipped (lock held, nothing tracked, or
        no usable price while the exit is resting), otherwise the decision
        taken. Without a price an unprotected position still gets its exit
        at the last planned target.
        """
        symbol = normalize_symbol(symbol)
        with self.book.locked(symbol) as slot:
            if slot is None:
                logger.debug(f"Manage tick for {symbol} skipped: previous tick still running")
                return None
            state = slot.state
            if state is None:
                return None
            try:
                return self._manage(state, slot.last_action_at_ms)
            except TradingError as exc:
                logger.warning(f"Manage tick for {symbol} held after error: {exc}")
                return ExitDecision(ExitAction.HOLD, f"error:{exc.code}")

    def _manage(self, state: ExitState, last_action_at_ms: Optional[float]) -> Optional[ExitDecision]:
        symbol = state.symbol
        if state.lifecycle == LifecycleState.EXIT_ATTACHED:
            state.apply(Event.TICK)

        filled = self._refresh_sell_order(state)
        if filled is not None:
            price = avg_fill_price(filled) or state.sell_order_limit or state.target_price
            qty = filled_qty(filled) or state.qty
            self._close_position(state, Event.TARGET_FILLED, "target_filled", fill=(qty, price))
            return ExitDecision(ExitAction.HOLD, "target_filled", price)

        quote, conservative, note = self._tick_quote(state)
        if quote is None:
            if not state.sell_order_id and state.target_price > 0:
                return self._protect_without_quote(state, note)
            logger.debug(f"Manage tick for {symbol}: no usable quote ({note}); holding")
            return None
        if not conservative:
            state.remember_quote(quote.bid, quote.ask, quote.observed_at_ms)

        tick = self._tick_size(symbol)
        plan = plan_exit(state.effective_entry_price, self.pricing,
                         entry_fee_bps=state.entry_fee_bps, exit_fee_bps=state.exit_fee_bps,
                         current_spread_bps=quote.spread_bps, tick_size=tick)
        state.required_exit_bps = plan.required_exit_bps
        state.target_price = plan.target_price
        state.breakeven_price = plan.breakeven_price
        state.fee_bps_round_trip = plan.fee_bps_round_trip

        inputs = TickInputs(
            bid=quote.bid,
            ask=quote.ask,
            now_ms=self.clock(),
            entry_price=state.effective_entry_price,
            entry_time_ms=state.entry_time_ms,
            target_price=state.target_price,
            breakeven_price=state.breakeven_price,
            tick_size=tick,
            stop_loss_bps=state.stop_loss_bps,
            sell_order_limit=state.sell_order_limit if state.sell_order_id else None,
            sell_order_submitted_at_ms=state.sell_order_submitted_at_ms,
            last_action_at_ms=last_action_at_ms,
            conservative=conservative,
        )
        decision = decide_exit_action(inputs, self.manage)
        self._execute(state, decision, quote)
        return decision

    def _protect_without_quote(self, state: ExitState, note: str) -> ExitDecision:
        """Rest the exit at the last planned target when no price is usable."""
        decision = ExitDecision(ExitAction.PLACE_EXIT, "missing_exit_no_quote", state.target_price)
        logger.info(
            "EXIT_ACTION symbol=%s action=place_exit reason=%s limit=%s quote=%s",
            state.symbol, decision.reason, decision.limit_price, note,
        )
        if self.metrics is not None:
            self.metrics.record_exit_action(decision.action.value)
        self._place_exit(state, decision.limit_price, decision.reason)
        return decision

    def _execute(self, state: ExitState, decision: ExitDecision, quote: Quote) -> None:
        symbol = state.symbol
        if decision.action == ExitAction.HOLD:
            logger.debug("EXIT_ACTION symbol=%s action=hold reason=%s", symbol, decision.reason)
            return

        logger.info(
            "EXIT_ACTION symbol=%s action=%s reason=%s limit=%s bid=%s ask=%s target=%s",
            symbol, decision.action.value, decision.reason, decision.limit_price,
            quote.bid, quote.ask, state.target_price,
        )
        if self.metrics is not None:
            self.metrics.record_exit_action(decision.action.value)

        if decision.action == ExitAction.PLACE_EXIT:
            self._place_exit(state, decision.limit_price, decision.reason)
        elif decision.action == ExitAction.REPRICE_EXIT:
            self.book.mark_action(symbol)
            self._reprice(state, decision.limit_price)
        elif decision.closes_position:
            self.book.mark_action(symbol)
            self._close_position(
                state, ACTION_EVENTS[decision.action], decision.action.value,
                limit_price=decision.limit_price, spread_bps=quote.spread_bps,
            )

    # ===== Closing =====
    def _close_position(self, state: ExitState, event: Event, reason: str, *,
                        limit_price: Optional[float] = None,
                        fill: Optional[Tuple[float, float]] = None,
                        spread_bps: float = 0.0) -> bool:
        """
        Run the effects of a closing transition in order.

        A cancel that cannot be confirmed or a taker leg that does not fully
        exit aborts the remaining effects; the state stays tracked (with its
        reduced quantity) and the next tick re-protects it.
        """
        next_state, effects = transition(state.lifecycle, event)
        exit_fee = state.exit_fee_bps
        for effect in effects:
            if effect == Effect.CANCEL_EXIT_ORDER:
                ok, raced = self._cancel_for_exit(state)
                if not ok:
                    return False
                if raced is not None:
                    # Resting exit filled while we were cancelling it
                    fill, reason = raced, "target_filled"
            elif effect == Effect.SUBMIT_TAKER_EXIT:
                if fill is not None:
                    continue
                fill = self._taker_sell(state, limit_price)
                if fill is None:
                    return False
                exit_fee = self.pricing.taker_fee_bps
            elif effect == Effect.EMIT_PNL:
                qty, price = fill or (state.qty, state.sell_order_limit or state.target_price)
                self._emit_pnl(RealizedPnL.from_close(
                    state, price, qty, reason, self.clock(), exit_fee_bps=exit_fee, spread_bps=spread_bps,
                ))
            elif effect == Effect.DELETE_STATE:
                self.book.delete_state(state.symbol)
        state.lifecycle = next_state
        self._invalidate_order_views()
        self._update_tracked_gauge()
        return True

    def _cancel_for_exit(self, state: ExitState) -> Tuple[bool, Optional[Tuple[float, float]]]:
        """
        Cancel the resting exit ahead of a taker leg.

        Returns (ok, fill). ``fill`` is set when the resting order turned out
        to be filled; ``ok`` False means it may still be live and the flip
        must not proceed.
        """
        order_id = state.sell_order_id
        if not order_id:
            return True, None
        cancelled = safe_cancel(self.broker, order_id)
        try:
            order = self.broker.get_order(order_id)
        except (NetworkError, HttpError) as exc:
            logger.warning(f"Exit order {order_id} lookup after cancel failed: {exc}")
            order = None
            if not cancelled:
                return False, None
        if order is not None:
            status = map_broker_status(order.get("status"))
            if status == OrderStatus.FILLED:
                price = avg_fill_price(order) or state.sell_order_limit or state.target_price
                return True, (filled_qty(order) or state.qty, price)
            if status not in (OrderStatus.CANCELED, OrderStatus.EXPIRED,
                              OrderStatus.REJECTED, OrderStatus.FAILED) and not cancelled:
                logger.warning(f"Exit order {order_id} for {state.symbol} still live; taker flip aborted")
                return False, None
        state.clear_sell_order()
        return True, None

    def _position_qty(self, symbol: str) -> Optional[float]:
        try:
            position = self.broker.get_position(symbol)
        except (NetworkError, HttpError) as exc:
            logger.warning(f"Position lookup failed for {symbol}: {exc}")
            return None
        if position is None:
            return 0.0
        return _as_float(position.get("qty_available") or position.get("qty"))

    def _taker_sell(self, state: ExitState, limit_price: Optional[float]) -> Optional[Tuple[float, float]]:
        """
        Immediate exit: IOC limit at the bid, then market for any remainder.
        Returns (qty, vwap) when the position is fully out, else None.
        """
        symbol = state.symbol
        qty = self._position_qty(symbol)
        if qty is None:
            return None
        increment = self._qty_increment(symbol)
        qty = round_down_to_increment(qty, increment)
        if qty <= 0:
            logger.info(f"No position left for {symbol}; closing state")
            return state.qty, limit_price or state.last_bid or state.target_price

        legs: List[Tuple[float, float]] = []
        if limit_price:
            ioc_limit = round_down_to_increment(limit_price, self._tick_size(symbol))
            order = self._submit(symbol, "sell", qty, order_type="limit", time_in_force="ioc",
                                 limit_price=ioc_limit, client_order_id=self.make_client_order_id(symbol, "sell", "taker"))
            if order is not None:
                q, p, _ = self._fill_from_poll(poll_order(
                    self.broker, order.get("id"), timeout_seconds=self.taker_fill_timeout_seconds,
                    interval_seconds=0.5, sleep=self.sleep, clock=self.monotonic,
                ))
                if q > 0 and p:
                    legs.append((q, p))

        remainder = round_down_to_increment(qty - sum(q for q, _ in legs), increment)
        if remainder > 0:
            order = self._submit(symbol, "sell", remainder, order_type="market",
                                 time_in_force=self._time_in_force(symbol, "gtc"),
                                 client_order_id=self.make_client_order_id(symbol, "sell", "market"))
            if order is not None:
                q, p, _ = self._fill_from_poll(poll_order(
                    self.broker, order.get("id"), timeout_seconds=self.taker_fill_timeout_seconds,
                    interval_seconds=0.5, sleep=self.sleep, clock=self.monotonic,
                ))
                if q > 0 and p:
                    legs.append((q, p))

        sold = sum(q for q, _ in legs)
        if sold < qty - increment / 2.0:
            state.qty = max(0.0, qty - sold)
            logger.warning(f"Taker exit for {symbol} incomplete: sold {sold}/{qty}; re-protecting remainder")
            return None
        vwap = sum(q * p for q, p in legs) / sold
        return sold, vwap

    def _emit_pnl(self, pnl: RealizedPnL) -> None:
        logger.info(
            "REALIZED_PNL symbol=%s qty=%s entry=%.6f exit=%.6f gross_usd=%.4f fees_usd=%.4f "
            "net_usd=%.4f net_bps=%.2f hold_s=%.0f reason=%s",
            pnl.symbol, pnl.qty, pnl.entry_price, pnl.exit_price, pnl.gross_pnl_usd,
            pnl.fees_usd_estimate, pnl.net_pnl_usd, pnl.net_pnl_bps, pnl.hold_seconds, pnl.exit_reason,
        )
        self.realized.append(pnl)
        if self.metrics is not None:
            self.metrics.record_realized_pnl(pnl.symbol, pnl.net_pnl_usd, pnl.exit_reason)
        for listener in self.pnl_listeners:
            listener(pnl)

    def _update_tracked_gauge(self) -> None:
        if self.metrics is not None:
            self.metrics.record_tracked_positions(len(self.book.states()))

    # ===== Reconciliation hooks =====
    def _state_from_position(self, position: Dict[str, Any]) -> Optional[ExitState]:
        symbol = position.get("symbol")
        qty = _as_float(position.get("qty"))
        entry = _as_float(position.get("avg_entry_price"))
        if not symbol or qty <= 0 or entry <= 0:
            return None
        # Unknown entry order type: assume the taker tier (higher, safer target)
        entry_fee = self.pricing.taker_fee_bps
        plan = plan_exit(entry, self.pricing, entry_fee_bps=entry_fee, tick_size=self._tick_size(symbol))
        state = ExitState(
            symbol=symbol,
            qty=qty,
            entry_price=entry,
            effective_entry_price=entry,
            entry_time_ms=self.clock(),
            fee_bps_round_trip=plan.fee_bps_round_trip,
            required_exit_bps=plan.required_exit_bps,
            min_net_profit_bps=plan.min_net_profit_bps,
            target_price=plan.target_price,
            breakeven_price=plan.breakeven_price,
            entry_fee_bps=plan.entry_fee_bps,
            exit_fee_bps=plan.exit_fee_bps,
            lifecycle=LifecycleState.NO_POSITION,
            adopted=True,
        )
        state.apply(Event.ADOPTED)
        return state

    def adopt(self, position: Dict[str, Any], sell_order: Dict[str, Any]) -> Optional[ExitState]:
        """Rebuild an ExitState for an untracked position around its open sell order."""
        state = self._state_from_position(position)
        if state is None:
            return None
        self.track_sell_order(state, sell_order)
        self.book.put_state(state)
        self._update_tracked_gauge()
        return state

    def track_sell_order(self, state: ExitState, sell_order: Dict[str, Any]) -> None:
        """Point ``state`` at a sell order already resting at the broker. Caller holds the slot lock."""
        submitted = normalize_timestamp_ms(sell_order.get("submitted_at") or sell_order.get("created_at"))
        state.attach_sell_order(
            sell_order.get("id"),
            _as_float(sell_order.get("limit_price")) or state.target_price,
            submitted or self.clock(),
        )

    def reset_exit_tracking(self, symbol: str) -> bool:
        """Forget a vanished exit order so the next tick re-attaches one."""
        with self.book.locked(symbol, timeout=5.0) as slot:
            if slot is None or slot.state is None or not slot.state.sell_order_id:
                return False
            state = slot.state
            if state.lifecycle in (LifecycleState.EXIT_ATTACHED, LifecycleState.MANAGING):
                state.apply(Event.EXIT_ORDER_LOST)
            state.clear_sell_order()
            return True

    def drop_state(self, symbol: str) -> bool:
        """Delete a tracked state whose position is gone at the broker."""
        with self.book.locked(symbol, timeout=5.0) as slot:
            if slot is None or slot.state is None:
                return False
            state = slot.state
            if state.lifecycle in (LifecycleState.EXIT_ATTACHED, LifecycleState.MANAGING):
                state.apply(Event.POSITION_GONE)
            self.book.delete_state(symbol)
        self._update_tracked_gauge()
        return True

    def ensure_exit_order(self, symbol: str, position: Optional[Dict[str, Any]] = None) -> bool:
        """
        Make sure ``symbol`` has a resting exit order, adopting the position
        into state first when it is untracked. Returns True when covered.
        """
        symbol = normalize_symbol(symbol)
        if self.mode == "DRY_RUN":
            logger.info(f"DRY_RUN: would place protective exit for {symbol}")
            return False
        with self.book.locked(symbol, timeout=5.0) as slot:
            if slot is None:
                return False
            state = slot.state
            if state is None:
                if position is None:
                    try:
                        position = self.broker.get_position(symbol)
                    except (NetworkError, HttpError) as exc:
                        logger.warning(f"Cannot repair {symbol}: position lookup failed ({exc})")
                        return False
                if position is None:
                    return False
                state = self._state_from_position(position)
                if state is None:
                    return False
                self.book.put_state(state)
            if state.sell_order_id:
                return True
            limit = state.target_price
            try:
                quote = self.quotes.get_quote(symbol, max_age_ms=self.quote_max_age_ms)
                limit = max(limit, round_up_to_tick(quote.ask, self._tick_size(symbol)))
            except TradingError:
                pass
            placed = self._place_exit(state, limit, "repair")
        self._update_tracked_gauge()
        return placed

    # ===== Façade operations =====
    def submit_order(self, symbol: str, side: str, qty: float, *, order_type: str = "limit",
                     limit_price: Optional[float] = None, time_in_force: str = "gtc",
                     intent: str = "manual") -> Dict[str, Any]:
        """Manual order pass-through stamped with an idempotency token."""
        symbol = normalize_symbol(symbol)
        client_id = self.make_client_order_id(symbol, side, intent)
        try:
            return self.broker.submit_order(
                symbol, side, qty, order_type=order_type, time_in_force=time_in_force,
                limit_price=limit_price, client_order_id=client_id,
            )
        finally:
            self._invalidate_order_views()

    def replace_order(self, order_id: str, *, limit_price: Optional[float] = None,
                      qty: Optional[float] = None) -> Dict[str, Any]:
        """Manual replace; a tracked exit follows its replacement order id."""
        tracked = next((s for s in self.book.states() if s.sell_order_id == order_id), None)
        if tracked is not None:
            symbol, side = tracked.symbol, "sell"
        else:
            current = self.broker.get_order(order_id)
            if current is None:
                raise OrderRejected(f"Order {order_id} not found", broker_code="not_found", status_code=404)
            symbol, side = current.get("symbol"), current.get("side", "buy")
        client_id = self.make_client_order_id(symbol, side, "replace")
        try:
            order = self.broker.replace_order(order_id, qty=qty, limit_price=limit_price, client_order_id=client_id)
        finally:
            self._invalidate_order_views()
        if tracked is not None:
            with self.book.locked(tracked.symbol, timeout=5.0) as slot:
                if slot is not None and slot.state is tracked:
                    tracked.attach_sell_order(order.get("id"), limit_price or tracked.sell_order_limit, self.clock())
        return order

    def cancel_order(self, order_id: str) -> bool:
        """
        Cancel an order. Under the ``replace_only`` policy a tracked
        protective exit cannot be cancelled on its own.
        """
        tracked = next((s for s in self.book.states() if s.sell_order_id == order_id), None)
        if tracked is not None and self.cancellation_policy == "replace_only":
            raise OrderRejected(
                f"Cancel of protective exit {order_id} for {tracked.symbol} refused (replace_only policy)",
                broker_code="protective_exit", status_code=409,
            )
        try:
            return self.broker.cancel_order(order_id)
        finally:
            self._invalidate_order_views()

    def status_snapshot(self) -> Dict[str, Any]:
        states = self.book.states()
        return {
            "mode": self.mode,
            "tracked_positions": {s.symbol: s.to_dict() for s in states},
            "in_flight": self.book.in_flight_symbols(),
            "active_symbols": self.active_symbol_count(),
            "max_active_symbols": self.sizing.max_active_symbols,
            "realized_count": len(self.realized),
            "caches": [c.stats() for c in (self.account_cache, self.positions_cache, self.orders_cache)],
        }
