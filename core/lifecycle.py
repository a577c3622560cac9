"""
Core: Position Lifecycle

Pure state machine for one symbol's position plus the exit decision rule run
on every management tick. Nothing here performs I/O; OrderLifecycleEngine in
core.execution applies the returned effects.

States: NO_POSITION → ENTRY_SUBMITTED → AWAITING_FILL → EXIT_ATTACHED → MANAGING
        → (FILLED | FORCED_EXIT | HARD_STOPPED) → NO_POSITION
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple
import logging

from core.exceptions import InvalidTransition
from core.pricing import round_up_to_tick, stop_price

logger = logging.getLogger(__name__)


class LifecycleState(Enum):
    NO_POSITION = "no_position"
    ENTRY_SUBMITTED = "entry_submitted"
    AWAITING_FILL = "awaiting_fill"
    EXIT_ATTACHED = "exit_attached"
    MANAGING = "managing"
    FILLED = "filled"
    FORCED_EXIT = "forced_exit"
    HARD_STOPPED = "hard_stopped"


class Event(Enum):
    SUBMIT_ENTRY = "submit_entry"
    ENTRY_ACCEPTED = "entry_accepted"
    ENTRY_REJECTED = "entry_rejected"
    ENTRY_FILLED = "entry_filled"
    ENTRY_TIMED_OUT = "entry_timed_out"
    ADOPTED = "adopted"
    TICK = "tick"
    EXIT_ORDER_LOST = "exit_order_lost"
    TARGET_FILLED = "target_filled"
    TAKER_EXIT = "taker_exit"
    HARD_STOP = "hard_stop"
    FORCE_EXIT = "force_exit"
    POSITION_GONE = "position_gone"
    RESET = "reset"


class Effect(Enum):
    SUBMIT_ENTRY_ORDER = "submit_entry_order"
    POLL_FILL = "poll_fill"
    CANCEL_ENTRY_ORDER = "cancel_entry_order"
    CLEAR_INTENT = "clear_intent"
    PLAN_EXIT = "plan_exit"
    SUBMIT_EXIT_ORDER = "submit_exit_order"
    PERSIST_STATE = "persist_state"
    CLEAR_EXIT_REFERENCE = "clear_exit_reference"
    CANCEL_EXIT_ORDER = "cancel_exit_order"
    SUBMIT_TAKER_EXIT = "submit_taker_exit"
    EMIT_PNL = "emit_pnl"
    DELETE_STATE = "delete_state"


S = LifecycleState
E = Effect

_CLOSE_EFFECTS = [E.CANCEL_EXIT_ORDER, E.SUBMIT_TAKER_EXIT, E.EMIT_PNL, E.DELETE_STATE]

TRANSITIONS: Dict[Tuple[LifecycleState, Event], Tuple[LifecycleState, List[Effect]]] = {
    (S.NO_POSITION, Event.SUBMIT_ENTRY): (S.ENTRY_SUBMITTED, [E.SUBMIT_ENTRY_ORDER]),
    (S.NO_POSITION, Event.ADOPTED): (S.EXIT_ATTACHED, [E.PERSIST_STATE]),
    (S.ENTRY_SUBMITTED, Event.ENTRY_ACCEPTED): (S.AWAITING_FILL, [E.POLL_FILL]),
    (S.ENTRY_SUBMITTED, Event.ENTRY_REJECTED): (S.NO_POSITION, [E.CLEAR_INTENT]),
    (S.AWAITING_FILL, Event.ENTRY_FILLED): (
        S.EXIT_ATTACHED, [E.PLAN_EXIT, E.SUBMIT_EXIT_ORDER, E.PERSIST_STATE, E.CLEAR_INTENT]
    ),
    (S.AWAITING_FILL, Event.ENTRY_TIMED_OUT): (S.NO_POSITION, [E.CANCEL_ENTRY_ORDER, E.CLEAR_INTENT]),
    (S.AWAITING_FILL, Event.ENTRY_REJECTED): (S.NO_POSITION, [E.CLEAR_INTENT]),
    (S.EXIT_ATTACHED, Event.TICK): (S.MANAGING, []),
    (S.MANAGING, Event.TICK): (S.MANAGING, []),
    (S.EXIT_ATTACHED, Event.EXIT_ORDER_LOST): (S.MANAGING, [E.CLEAR_EXIT_REFERENCE]),
    (S.MANAGING, Event.EXIT_ORDER_LOST): (S.MANAGING, [E.CLEAR_EXIT_REFERENCE]),
    (S.EXIT_ATTACHED, Event.TARGET_FILLED): (S.FILLED, [E.EMIT_PNL, E.DELETE_STATE]),
    (S.MANAGING, Event.TARGET_FILLED): (S.FILLED, [E.EMIT_PNL, E.DELETE_STATE]),
    (S.EXIT_ATTACHED, Event.TAKER_EXIT): (S.FILLED, list(_CLOSE_EFFECTS)),
    (S.MANAGING, Event.TAKER_EXIT): (S.FILLED, list(_CLOSE_EFFECTS)),
    (S.EXIT_ATTACHED, Event.HARD_STOP): (S.HARD_STOPPED, list(_CLOSE_EFFECTS)),
    (S.MANAGING, Event.HARD_STOP): (S.HARD_STOPPED, list(_CLOSE_EFFECTS)),
    (S.EXIT_ATTACHED, Event.FORCE_EXIT): (S.FORCED_EXIT, list(_CLOSE_EFFECTS)),
    (S.MANAGING, Event.FORCE_EXIT): (S.FORCED_EXIT, list(_CLOSE_EFFECTS)),
    (S.EXIT_ATTACHED, Event.POSITION_GONE): (S.NO_POSITION, [E.DELETE_STATE]),
    (S.MANAGING, Event.POSITION_GONE): (S.NO_POSITION, [E.DELETE_STATE]),
    (S.FILLED, Event.RESET): (S.NO_POSITION, []),
    (S.FORCED_EXIT, Event.RESET): (S.NO_POSITION, []),
    (S.HARD_STOPPED, Event.RESET): (S.NO_POSITION, []),
}

CLOSED_STATES = {S.FILLED, S.FORCED_EXIT, S.HARD_STOPPED}


def transition(state: LifecycleState, event: Event) -> Tuple[LifecycleState, List[Effect]]:
    """Return (next_state, effects). Raises InvalidTransition for unknown pairs."""
    try:
        next_state, effects = TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"Invalid lifecycle transition: {state.value} --{event.value}-->") from None
    return next_state, list(effects)


class ExitAction(Enum):
    HOLD = "hold"
    PLACE_EXIT = "place_exit"
    REPRICE_EXIT = "reprice_exit"
    TAKER_EXIT = "taker_exit"
    HARD_STOP = "hard_stop"
    FORCE_EXIT = "force_exit"
    MAX_HOLD_EXIT = "max_hold_exit"


# Decision -> lifecycle event for the closing actions
ACTION_EVENTS = {
    ExitAction.TAKER_EXIT: Event.TAKER_EXIT,
    ExitAction.HARD_STOP: Event.HARD_STOP,
    ExitAction.FORCE_EXIT: Event.FORCE_EXIT,
    ExitAction.MAX_HOLD_EXIT: Event.FORCE_EXIT,
}


@dataclass(frozen=True)
class TickInputs:
    """Everything decide_exit_action() looks at for one tick."""
    bid: float
    ask: float
    now_ms: float
    entry_price: float
    entry_time_ms: float
    target_price: float
    breakeven_price: float
    tick_size: float
    stop_loss_bps: Optional[float] = None
    sell_order_limit: Optional[float] = None
    sell_order_submitted_at_ms: Optional[float] = None
    last_action_at_ms: Optional[float] = None
    # Quote came from the last-known fallback: only a missing order may be placed
    conservative: bool = False

    @property
    def has_sell_order(self) -> bool:
        return self.sell_order_limit is not None

    @property
    def position_age_ms(self) -> float:
        return max(0.0, self.now_ms - self.entry_time_ms)


@dataclass
class ManageConfig:
    """Exit management knobs from ``policy.yaml: lifecycle``."""
    taker_exit_on_touch: bool = True
    taker_cooldown_ms: float = 15000.0
    stop_loss_bps: float = 150.0
    max_age_ms: Optional[float] = 6 * 3600 * 1000.0
    allow_loss_on_force_exit: bool = False
    max_hold_ms: Optional[float] = 2 * 3600 * 1000.0
    reprice_min_age_ms: float = 30000.0
    reprice_threshold_bps: float = 10.0
    reprice_cooldown_ms: float = 20000.0

    @classmethod
    def from_policy(cls, policy: dict) -> "ManageConfig":
        cfg = (policy or {}).get("lifecycle", {}) or {}
        defaults = cls()

        def _opt(name):
            value = cfg.get(name, getattr(defaults, name))
            return None if value in (None, 0) else float(value)

        return cls(
            taker_exit_on_touch=bool(cfg.get("taker_exit_on_touch", defaults.taker_exit_on_touch)),
            taker_cooldown_ms=float(cfg.get("taker_cooldown_ms", defaults.taker_cooldown_ms)),
            stop_loss_bps=float(cfg.get("stop_loss_bps", defaults.stop_loss_bps)),
            max_age_ms=_opt("max_age_ms"),
            allow_loss_on_force_exit=bool(cfg.get("allow_loss_on_force_exit", defaults.allow_loss_on_force_exit)),
            max_hold_ms=_opt("max_hold_ms"),
            reprice_min_age_ms=float(cfg.get("reprice_min_age_ms", defaults.reprice_min_age_ms)),
            reprice_threshold_bps=float(cfg.get("reprice_threshold_bps", defaults.reprice_threshold_bps)),
            reprice_cooldown_ms=float(cfg.get("reprice_cooldown_ms", defaults.reprice_cooldown_ms)),
        )


@dataclass(frozen=True)
class ExitDecision:
    action: ExitAction
    reason: str
    limit_price: Optional[float] = None

    @property
    def closes_position(self) -> bool:
        return self.action in ACTION_EVENTS


def desired_limit(inputs: TickInputs) -> float:
    """Maker limit: the target, or the current ask when the book is above it."""
    return max(inputs.target_price, round_up_to_tick(inputs.ask, inputs.tick_size))


def _throttled(last_action_at_ms: Optional[float], now_ms: float, cooldown_ms: float) -> bool:
    return last_action_at_ms is not None and now_ms - last_action_at_ms < cooldown_ms


def decide_exit_action(inputs: TickInputs, config: ManageConfig) -> ExitDecision:
    """
    Exit decision for one tick, first match wins:

    (a) taker on touch: bid reached target
    (b) hard stop: bid at or below entry * (1 - stop)
    (c) force exit past max age (at a loss only when allowed)
    (d) max-hold exit while still profitable
    (e) ensure a maker exit rests at the desired limit (place / reprice)
    (f) hold
    """
    now = inputs.now_ms
    bid = inputs.bid
    profitable = bid >= inputs.breakeven_price
    want = desired_limit(inputs)

    if inputs.conservative:
        if not inputs.has_sell_order:
            return ExitDecision(ExitAction.PLACE_EXIT, "missing_exit_last_known", want)
        return ExitDecision(ExitAction.HOLD, "conservative_quote")

    # (a)
    if config.taker_exit_on_touch and bid >= inputs.target_price:
        if not _throttled(inputs.last_action_at_ms, now, config.taker_cooldown_ms):
            return ExitDecision(ExitAction.TAKER_EXIT, "target_touched", bid)

    # (b)
    stop_bps = inputs.stop_loss_bps if inputs.stop_loss_bps is not None else config.stop_loss_bps
    if stop_bps and stop_bps > 0 and bid <= stop_price(inputs.entry_price, stop_bps):
        return ExitDecision(ExitAction.HARD_STOP, "stop_loss", bid)

    # (c)
    if config.max_age_ms and inputs.position_age_ms >= config.max_age_ms:
        if profitable or config.allow_loss_on_force_exit:
            return ExitDecision(ExitAction.FORCE_EXIT, "max_age", bid)

    # (d)
    if config.max_hold_ms and inputs.position_age_ms >= config.max_hold_ms and profitable:
        return ExitDecision(ExitAction.MAX_HOLD_EXIT, "max_hold_profitable", bid)

    # (e)
    if not inputs.has_sell_order:
        return ExitDecision(ExitAction.PLACE_EXIT, "missing_exit", want)

    if inputs.ask >= inputs.breakeven_price:
        order_age = now - (inputs.sell_order_submitted_at_ms or now)
        distance_bps = abs(inputs.sell_order_limit - want) / want * 10000.0
        if (
            order_age >= config.reprice_min_age_ms
            and distance_bps > config.reprice_threshold_bps
            and not _throttled(inputs.last_action_at_ms, now, config.reprice_cooldown_ms)
        ):
            return ExitDecision(ExitAction.REPRICE_EXIT, f"drift_{distance_bps:.1f}bps", want)
        return ExitDecision(ExitAction.HOLD, "maker_resting")

    # (f)
    return ExitDecision(ExitAction.HOLD, "below_breakeven")
