"""
Core: Exit State Book

One slot per symbol owning its management lock, its ExitState (if a position
is open), the entry in-flight marker and the last-action timestamp. Keeping
lock and state in the same slot means they cannot drift apart.

All state is process memory. After a restart the reconciliation loop
rebuilds it from the broker's positions and open orders.
"""

from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional
import logging
import threading
import time

from core.lifecycle import Effect, Event, LifecycleState, transition

logger = logging.getLogger(__name__)


def now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class ExitState:
    """Tracked open position and its protective exit order."""
    symbol: str
    qty: float
    entry_price: float
    effective_entry_price: float
    entry_time_ms: float
    fee_bps_round_trip: float
    required_exit_bps: float
    min_net_profit_bps: float
    target_price: float
    breakeven_price: float
    entry_fee_bps: float = 0.0
    exit_fee_bps: float = 0.0
    sell_order_id: Optional[str] = None
    sell_order_submitted_at_ms: Optional[float] = None
    sell_order_limit: Optional[float] = None
    entry_order_id: Optional[str] = None
    stop_loss_bps: Optional[float] = None
    last_bid: Optional[float] = None
    last_ask: Optional[float] = None
    last_mid: Optional[float] = None
    last_quote_at_ms: Optional[float] = None
    lifecycle: LifecycleState = LifecycleState.EXIT_ATTACHED
    adopted: bool = False
    # Set when reconciliation first sees the position missing
    missing_since_ms: Optional[float] = None

    def attach_sell_order(self, order_id: str, limit_price: float, submitted_at_ms: float) -> None:
        self.sell_order_id = order_id
        self.sell_order_limit = limit_price
        self.sell_order_submitted_at_ms = submitted_at_ms

    def clear_sell_order(self) -> None:
        self.sell_order_id = None
        self.sell_order_limit = None
        self.sell_order_submitted_at_ms = None

    def remember_quote(self, bid: float, ask: float, at_ms: float) -> None:
        self.last_bid = bid
        self.last_ask = ask
        self.last_mid = (bid + ask) / 2.0
        self.last_quote_at_ms = at_ms

    def apply(self, event: Event) -> List[Effect]:
        """Advance the lifecycle; returns the effects to execute."""
        self.lifecycle, effects = transition(self.lifecycle, event)
        return effects

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["lifecycle"] = self.lifecycle.value
        return data


@dataclass(frozen=True)
class RealizedPnL:
    """Emitted once for every closed position, before its state is deleted."""
    symbol: str
    qty: float
    entry_price: float
    exit_price: float
    fees_usd_estimate: float
    spread_bps_estimate: float
    gross_pnl_usd: float
    net_pnl_usd: float
    net_pnl_bps: float
    hold_seconds: float
    exit_reason: str
    closed_at_ms: float

    @classmethod
    def from_close(cls, state: ExitState, exit_price: float, qty: float, exit_reason: str,
                   closed_at_ms: float, exit_fee_bps: Optional[float] = None,
                   spread_bps: float = 0.0) -> "RealizedPnL":
        exit_fee = state.exit_fee_bps if exit_fee_bps is None else exit_fee_bps
        entry_notional = state.effective_entry_price * qty
        gross = (exit_price - state.effective_entry_price) * qty
        fees = entry_notional * state.entry_fee_bps / 10000.0 + exit_price * qty * exit_fee / 10000.0
        net = gross - fees
        return cls(
            symbol=state.symbol,
            qty=qty,
            entry_price=state.effective_entry_price,
            exit_price=exit_price,
            fees_usd_estimate=fees,
            spread_bps_estimate=spread_bps,
            gross_pnl_usd=gross,
            net_pnl_usd=net,
            net_pnl_bps=(net / entry_notional * 10000.0) if entry_notional > 0 else 0.0,
            hold_seconds=max(0.0, (closed_at_ms - state.entry_time_ms) / 1000.0),
            exit_reason=exit_reason,
            closed_at_ms=closed_at_ms,
        )


@dataclass
class InFlight:
    reason: str
    expires_at_ms: float


@dataclass
class SymbolSlot:
    symbol: str
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    state: Optional[ExitState] = None
    in_flight: Optional[InFlight] = None
    last_action_at_ms: Optional[float] = None


class SymbolBook:
    """
    Per-symbol slots shared by the entry, management and reconciliation tasks.

    The management lock is per slot and held for one tick; the in-flight
    marker is guarded by the book lock so claiming it is atomic across
    threads.
    """

    def __init__(self, clock=now_ms):
        self._slots: Dict[str, SymbolSlot] = {}
        self._lock = threading.Lock()
        self.clock = clock

    def slot(self, symbol: str) -> SymbolSlot:
        with self._lock:
            slot = self._slots.get(symbol)
            if slot is None:
                slot = SymbolSlot(symbol=symbol)
                self._slots[symbol] = slot
            return slot

    @contextmanager
    def locked(self, symbol: str, timeout: Optional[float] = None) -> Iterator[Optional[SymbolSlot]]:
        """
        Hold the symbol's management lock.

        With ``timeout=None`` the acquire is non-blocking and yields None when
        the lock is already held (the caller skips its work).
        """
        slot = self.slot(symbol)
        if timeout is None:
            acquired = slot.lock.acquire(blocking=False)
        else:
            acquired = slot.lock.acquire(timeout=timeout)
        if not acquired:
            yield None
            return
        try:
            yield slot
        finally:
            slot.lock.release()

    # ===== Exit states =====
    def get_state(self, symbol: str) -> Optional[ExitState]:
        with self._lock:
            slot = self._slots.get(symbol)
            return slot.state if slot else None

    def put_state(self, state: ExitState) -> None:
        self.slot(state.symbol).state = state

    def delete_state(self, symbol: str) -> Optional[ExitState]:
        with self._lock:
            slot = self._slots.get(symbol)
            if slot is None:
                return None
            state, slot.state = slot.state, None
            return state

    def states(self) -> List[ExitState]:
        with self._lock:
            return [slot.state for slot in self._slots.values() if slot.state is not None]

    def tracked_symbols(self) -> List[str]:
        return [state.symbol for state in self.states()]

    # ===== In-flight entries =====
    def claim_in_flight(self, symbol: str, reason: str, ttl_ms: float) -> bool:
        """Atomically mark an entry attempt; False if one is already live."""
        now = self.clock()
        with self._lock:
            slot = self._slots.get(symbol)
            if slot is None:
                slot = SymbolSlot(symbol=symbol)
                self._slots[symbol] = slot
            current = slot.in_flight
            if current is not None and current.expires_at_ms > now:
                return False
            slot.in_flight = InFlight(reason=reason, expires_at_ms=now + ttl_ms)
            return True

    def release_in_flight(self, symbol: str) -> None:
        with self._lock:
            slot = self._slots.get(symbol)
            if slot is not None:
                slot.in_flight = None

    def in_flight(self, symbol: str) -> Optional[InFlight]:
        now = self.clock()
        with self._lock:
            slot = self._slots.get(symbol)
            if slot is None or slot.in_flight is None:
                return None
            if slot.in_flight.expires_at_ms <= now:
                slot.in_flight = None
                return None
            return slot.in_flight

    def in_flight_symbols(self) -> List[str]:
        now = self.clock()
        with self._lock:
            return [
                symbol for symbol, slot in self._slots.items()
                if slot.in_flight is not None and slot.in_flight.expires_at_ms > now
            ]

    # ===== Throttle =====
    def mark_action(self, symbol: str, at_ms: Optional[float] = None) -> None:
        self.slot(symbol).last_action_at_ms = self.clock() if at_ms is None else at_ms

    def last_action_at(self, symbol: str) -> Optional[float]:
        with self._lock:
            slot = self._slots.get(symbol)
            return slot.last_action_at_ms if slot else None

    def active_symbols(self) -> List[str]:
        """Symbols holding a position or an entry in flight."""
        return sorted(set(self.tracked_symbols()) | set(self.in_flight_symbols()))

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            slots = list(self._slots.values())
        now = self.clock()
        return {
            slot.symbol: {
                "state": slot.state.to_dict() if slot.state else None,
                "locked": slot.lock.locked(),
                "in_flight": (
                    {"reason": slot.in_flight.reason, "expires_at_ms": slot.in_flight.expires_at_ms}
                    if slot.in_flight and slot.in_flight.expires_at_ms > now else None
                ),
                "last_action_at_ms": slot.last_action_at_ms,
            }
            for slot in slots
        }
