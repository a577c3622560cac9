"""
Core: Reconciliation Loop

Compares the engine's believed state (SymbolBook) against the broker's
positions and open orders:

- untracked position with an open sell  → adopt (RECONCILE_ADOPT)
- untracked position without a sell     → orphan (ORPHAN_DETECTED), repaired
- tracked state whose sell vanished     → exit reference reset, re-placed next tick
- tracked state with no exit reference  → reattached to a resting sell, or repaired
- tracked state shrunk to dust          → dropped
- tracked state whose position is gone  → dropped after a grace period

A fetch failure reports an error and leaves all state untouched.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging
import threading

from core.exceptions import HttpError, NetworkError, TradingError
from core.exit_state import now_ms
from core.order_state import OrderStatus, map_broker_status, remaining_qty
from core.pricing import plan_exit

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    reason: str
    started_at_ms: float
    positions: int = 0
    open_sells: int = 0
    orphans: List[str] = field(default_factory=list)
    adopted: List[str] = field(default_factory=list)
    reattached: List[str] = field(default_factory=list)
    reset: List[str] = field(default_factory=list)
    repaired: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    dust: List[str] = field(default_factory=list)
    halted: bool = False
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "started_at_ms": self.started_at_ms,
            "positions": self.positions,
            "open_sells": self.open_sells,
            "orphans": list(self.orphans),
            "adopted": list(self.adopted),
            "reattached": list(self.reattached),
            "reset": list(self.reset),
            "repaired": list(self.repaired),
            "removed": list(self.removed),
            "dust": list(self.dust),
            "halted": self.halted,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 1),
        }


def flatten_orders(orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Top-level orders followed by their nested legs."""
    flat: List[Dict[str, Any]] = []
    for order in orders or []:
        flat.append(order)
        for leg in order.get("legs") or []:
            flat.append(leg)
    return flat


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class Reconciler:
    """
    Keeps tracked exit states consistent with broker truth.

    Config (``policy.yaml: reconcile``):
        interval_seconds, min_interval_seconds, missing_grace_ms,
        dust_qty, dust_usd, repair_orphans, halt_on_orphans, lock_timeout_seconds
    """

    def __init__(self, engine, policy: Optional[Dict[str, Any]] = None, metrics=None, clock=now_ms):
        self.engine = engine
        self.metrics = metrics
        self.clock = clock
        cfg = (policy or {}).get("reconcile", {}) or {}
        self.interval_seconds = float(cfg.get("interval_seconds", 60))
        self.min_interval_ms = float(cfg.get("min_interval_seconds", 10)) * 1000.0
        self.missing_grace_ms = float(cfg.get("missing_grace_ms", 30000))
        self.dust_qty = float(cfg.get("dust_qty", 1e-6))
        self.dust_usd = float(cfg.get("dust_usd", 1.0))
        self.repair_orphans = bool(cfg.get("repair_orphans", True))
        self.halt_on_orphans = bool(cfg.get("halt_on_orphans", True))
        self.lock_timeout_seconds = float(cfg.get("lock_timeout_seconds", 5.0))

        self._run_lock = threading.Lock()
        self._orphans: Dict[str, Dict[str, Any]] = {}
        self.last_report: Optional[ReconcileReport] = None
        self.last_run_at_ms: Optional[float] = None

        logger.info(
            "Initialized Reconciler (interval=%ss, grace=%sms, dust=%s/$%s, repair=%s, halt_on_orphans=%s)",
            self.interval_seconds, self.missing_grace_ms, self.dust_qty, self.dust_usd,
            self.repair_orphans, self.halt_on_orphans,
        )

    # ===== Entry gate =====
    @property
    def entries_halted(self) -> bool:
        return self.halt_on_orphans and bool(self._orphans)

    def entry_gate(self) -> Optional[str]:
        """Hook for OrderLifecycleEngine.entry_gate."""
        if self.entries_halted:
            return f"unprotected positions: {', '.join(sorted(self._orphans))}"
        return None

    def orphan_report(self) -> Dict[str, Any]:
        return {
            "halted": self.entries_halted,
            "orphans": {symbol: dict(info) for symbol, info in self._orphans.items()},
            "last_run_at_ms": self.last_run_at_ms,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

    # ===== Runs =====
    def maybe_run(self, reason: str = "pre_entry") -> Optional[ReconcileReport]:
        """Run unless a pass completed within min_interval_seconds."""
        if self.last_run_at_ms is not None and self.clock() - self.last_run_at_ms < self.min_interval_ms:
            return self.last_report
        return self.run_once(reason)

    def run_once(self, reason: str = "scheduled") -> Optional[ReconcileReport]:
        if not self._run_lock.acquire(blocking=False):
            logger.debug("Reconcile (%s) skipped: pass already running", reason)
            return self.last_report
        try:
            report = self._run(reason)
        finally:
            self._run_lock.release()
        self.last_report = report
        self.last_run_at_ms = self.clock()
        if self.metrics is not None:
            self.metrics.record_reconcile("ok" if report.ok else "error")
            self.metrics.record_orphans(len(self._orphans))
        return report

    def _run(self, reason: str) -> ReconcileReport:
        started = self.clock()
        report = ReconcileReport(reason=reason, started_at_ms=started)
        try:
            positions = self.engine.list_positions(max_age_seconds=0)
            orders = self.engine.list_open_orders(max_age_seconds=0)
        except TradingError as exc:
            logger.warning(f"Reconcile ({reason}) aborted; broker state unavailable: {exc}")
            report.error = f"{exc.code}: {exc.message}"
            report.halted = self.entries_halted
            report.duration_ms = self.clock() - started
            return report

        sells: Dict[str, List[Dict[str, Any]]] = {}
        for order in flatten_orders(orders):
            if str(order.get("side", "")).lower() != "sell":
                continue
            if map_broker_status(order.get("status")) not in (OrderStatus.OPEN, OrderStatus.PARTIAL_FILL, OrderStatus.NEW):
                continue
            sells.setdefault(order.get("symbol"), []).append(order)
        report.open_sells = sum(len(v) for v in sells.values())

        held: Dict[str, Dict[str, Any]] = {}
        for position in positions:
            symbol = position.get("symbol")
            qty = _float(position.get("qty"))
            if not symbol or qty <= 0:
                continue
            value = abs(_float(position.get("market_value"))) or qty * _float(position.get("current_price"))
            if qty < self.dust_qty or (value and value < self.dust_usd):
                report.dust.append(symbol)
                continue
            held[symbol] = position
        report.positions = len(held)

        orphans: Dict[str, Dict[str, Any]] = {}
        unprotected: List[str] = []
        for symbol, position in held.items():
            symbol_sells = sells.get(symbol, [])
            state = self.engine.book.get_state(symbol)
            if state is None:
                if self.engine.book.in_flight(symbol) is not None:
                    continue
                if symbol_sells:
                    self._adopt(position, symbol_sells, report)
                else:
                    orphans[symbol] = self._orphan(position)
                continue

            outcome, sell_order_id = self._sync_tracked(symbol, position, symbol_sells, report)
            if outcome == "vanished":
                if not self._exit_filled(sell_order_id) and self.engine.reset_exit_tracking(symbol):
                    logger.warning(f"Reconcile: exit order for {symbol} vanished; re-placing next tick")
                    report.reset.append(symbol)
            elif outcome == "unprotected":
                unprotected.append(symbol)

        for symbol in report.dust:
            if self.engine.book.get_state(symbol) is not None and self.engine.drop_state(symbol):
                logger.warning(f"Reconcile: position for {symbol} is dust; state removed")
                report.removed.append(symbol)

        now = self.clock()
        for state in self.engine.book.states():
            if state.symbol in held or state.symbol in report.dust:
                continue
            if state.missing_since_ms is None:
                state.missing_since_ms = now
                logger.info(f"Reconcile: position for {state.symbol} not reported; grace period started")
                continue
            if now - state.missing_since_ms >= self.missing_grace_ms and self.engine.drop_state(state.symbol):
                logger.warning(f"Reconcile: position for {state.symbol} gone; state removed")
                report.removed.append(state.symbol)

        if self.repair_orphans:
            for symbol in list(orphans):
                if self.engine.ensure_exit_order(symbol, held[symbol]):
                    report.repaired.append(symbol)
                    del orphans[symbol]

        # Tracked but without any exit; unrepaired ones halt entries like orphans
        for symbol in unprotected:
            if self.repair_orphans and self.engine.ensure_exit_order(symbol, held[symbol]):
                report.repaired.append(symbol)
            else:
                orphans[symbol] = self._orphan(held[symbol])

        self._orphans = orphans
        report.orphans = sorted(orphans)
        report.halted = self.entries_halted
        report.duration_ms = self.clock() - started
        logger.info(
            "Reconcile (%s): positions=%d sells=%d adopted=%d reattached=%d orphans=%d repaired=%d "
            "reset=%d removed=%d halted=%s",
            reason, report.positions, report.open_sells, len(report.adopted), len(report.reattached),
            len(report.orphans), len(report.repaired), len(report.reset), len(report.removed), report.halted,
        )
        return report

    def _sync_tracked(self, symbol: str, position: Dict[str, Any], sells: List[Dict[str, Any]],
                      report: ReconcileReport) -> Tuple[Optional[str], Optional[str]]:
        """
        Align a tracked state with the broker under the symbol's slot lock.

        Returns (outcome, sell_order_id): "vanished" when the tracked exit is
        no longer open, "unprotected" when no exit is tracked and none rests
        at the broker, otherwise None. A resting sell the state lost track of
        is reattached instead of letting the next tick place a second one.
        """
        with self.engine.book.locked(symbol, timeout=self.lock_timeout_seconds) as slot:
            if slot is None or slot.state is None:
                logger.info(f"Reconcile: {symbol} busy or closed; checked next pass")
                return None, None
            state = slot.state
            state.missing_since_ms = None
            qty = _float(position.get("qty"))
            if abs(qty - state.qty) > self.dust_qty:
                logger.info(f"Reconcile: {symbol} qty {state.qty} -> {qty} (broker)")
                state.qty = qty

            if state.sell_order_id:
                if state.sell_order_id in {o.get("id") for o in sells}:
                    return None, None
                return "vanished", state.sell_order_id
            if not sells:
                return "unprotected", None

            best = self._best_sell(sells, qty, state.target_price)
            self.engine.track_sell_order(state, best)
            logger.info(
                "RECONCILE_REATTACH symbol=%s qty=%s sell_order_id=%s sell_limit=%s",
                symbol, qty, best.get("id"), state.sell_order_limit,
            )
            report.reattached.append(symbol)
            return None, None

    @staticmethod
    def _best_sell(sells: List[Dict[str, Any]], qty: float, target: float) -> Dict[str, Any]:
        """Closest remaining quantity first, then closest limit to the target."""
        return min(
            sells,
            key=lambda o: (abs(remaining_qty(o) - qty), abs(_float(o.get("limit_price")) - target)),
        )

    def _exit_filled(self, order_id: str) -> bool:
        """A vanished exit that filled is left to the management tick (it emits PnL)."""
        try:
            order = self.engine.broker.get_order(order_id)
        except (NetworkError, HttpError):
            return True
        return order is not None and map_broker_status(order.get("status")) == OrderStatus.FILLED

    def _adopt(self, position: Dict[str, Any], sells: List[Dict[str, Any]], report: ReconcileReport) -> None:
        symbol = position.get("symbol")
        qty = _float(position.get("qty"))
        entry = _float(position.get("avg_entry_price"))
        target = entry
        if entry > 0:
            pricing = self.engine.pricing
            target = plan_exit(entry, pricing, entry_fee_bps=pricing.taker_fee_bps).target_price

        best = self._best_sell(sells, qty, target)
        state = self.engine.adopt(position, best)
        if state is None:
            logger.warning(f"Reconcile: could not adopt {symbol} (qty={qty}, entry={entry})")
            return
        logger.info(
            "RECONCILE_ADOPT symbol=%s qty=%s entry=%s sell_order_id=%s sell_limit=%s target=%s",
            symbol, qty, entry, best.get("id"), state.sell_order_limit, state.target_price,
        )
        report.adopted.append(symbol)

    def _orphan(self, position: Dict[str, Any]) -> Dict[str, Any]:
        symbol = position.get("symbol")
        first_seen = self._orphans.get(symbol, {}).get("first_seen_ms") or self.clock()
        info = {
            "qty": _float(position.get("qty")),
            "avg_entry_price": _float(position.get("avg_entry_price")),
            "market_value": _float(position.get("market_value")),
            "first_seen_ms": first_seen,
        }
        logger.warning(
            "ORPHAN_DETECTED symbol=%s qty=%s entry=%s value=%s",
            symbol, info["qty"], info["avg_entry_price"], info["market_value"],
        )
        return info
