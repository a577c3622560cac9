"""
Core: Pricing Model

Pure functions that turn fees, slippage, spread and a desired net profit into
a required gross exit move (bps) and a concrete limit price. No I/O and no
mutable state; every function here is referentially transparent.

Rounding rule: sell-side prices round UP to the tick so the realized move is
never below the required one; quantities round DOWN to the lot increment.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

BPS = 10000.0


def _round_to_increment(value: float, increment: float, rounding: str) -> float:
    if increment is None or increment <= 0:
        return value
    step = Decimal(repr(float(increment)))
    units = (Decimal(repr(float(value))) / step).to_integral_value(rounding=rounding)
    return float(units * step)


def round_up_to_tick(price: float, tick_size: float) -> float:
    return _round_to_increment(price, tick_size, ROUND_CEILING)


def round_down_to_increment(value: float, increment: float) -> float:
    """Floor ``value`` to a multiple of ``increment`` (lot sizes, tick sizes for buys)."""
    return _round_to_increment(value, increment, ROUND_FLOOR)


def spread_bps(bid: float, ask: float) -> float:
    """Quoted spread relative to mid, in bps. Invalid books report infinity."""
    if bid <= 0 or ask <= 0 or ask < bid:
        return float("inf")
    mid = (bid + ask) / 2.0
    return (ask - bid) / mid * BPS


def required_exit_bps(
    desired_net_bps: float,
    fee_bps_round_trip: float,
    slippage_bps: float = 0.0,
    spread_buffer_bps: float = 0.0,
    profit_buffer_bps: float = 0.0,
    cap_bps: Optional[float] = None,
    min_gross_take_profit_bps: float = 0.0,
) -> float:
    """
    Required gross exit move in bps.

    Sum of all components, capped at ``cap_bps`` only when the cap still
    covers fees + slippage + buffers, then floored at the minimum gross
    take-profit.
    """
    safety_floor = fee_bps_round_trip + slippage_bps + spread_buffer_bps + profit_buffer_bps
    total = desired_net_bps + safety_floor
    if cap_bps is not None and cap_bps >= safety_floor:
        total = min(total, cap_bps)
    return max(total, min_gross_take_profit_bps)


def net_after_fees_required_bps(entry_fee_bps: float, exit_fee_bps: float, desired_net_bps: float) -> float:
    """
    Minimum gross move so that ``(1+gross)(1-fee_buy)(1-fee_sell) = 1+net``.

    Returns 0 when the fees sum to 100% or more (no finite answer).
    """
    fee_buy = entry_fee_bps / BPS
    fee_sell = exit_fee_bps / BPS
    if fee_buy + fee_sell >= 1.0:
        return 0.0
    net = desired_net_bps / BPS
    gross = (1.0 + net) / ((1.0 - fee_buy) * (1.0 - fee_sell)) - 1.0
    return gross * BPS


def round_trip_net_bps(gross_bps: float, entry_fee_bps: float, exit_fee_bps: float) -> float:
    """Inverse of :func:`net_after_fees_required_bps`."""
    gross = gross_bps / BPS
    net = (1.0 + gross) * (1.0 - entry_fee_bps / BPS) * (1.0 - exit_fee_bps / BPS) - 1.0
    return net * BPS


def spread_aware_required_bps(
    base_required_bps: float,
    current_spread_bps: float,
    floor_bps: float = 0.0,
    cap_bps: float = 200.0,
    multiplier: float = 1.0,
    add_bps: float = 0.0,
) -> float:
    """A wide spread raises the bar: ``max(base, clamp(spread)*mult + add)``."""
    clamped = min(max(current_spread_bps, floor_bps), cap_bps)
    return max(base_required_bps, clamped * multiplier + add_bps)


def target_sell_price(entry_price: float, required_bps: float, tick_size: float) -> float:
    raw = entry_price * (1.0 + required_bps / BPS)
    return round_up_to_tick(raw, tick_size)


def breakeven_price(entry_price: float, entry_fee_bps: float, exit_fee_bps: float, tick_size: float) -> float:
    """Lowest sell price that loses nothing after both fees."""
    return target_sell_price(entry_price, net_after_fees_required_bps(entry_fee_bps, exit_fee_bps, 0.0), tick_size)


def stop_price(entry_price: float, stop_bps: float) -> float:
    return entry_price * (1.0 - stop_bps / BPS)


def entry_fee_bps_for_order(
    order_type: str,
    time_in_force: str = "gtc",
    post_only: bool = False,
    maker_fee_bps: float = 15.0,
    taker_fee_bps: float = 25.0,
) -> float:
    """
    Fee tier for an entry order.

    Market orders and IOC/FOK limits take liquidity; a post-only or resting
    limit is billed as maker.
    """
    order_type = (order_type or "").lower()
    time_in_force = (time_in_force or "").lower()
    if post_only:
        return maker_fee_bps
    if order_type == "market" or time_in_force in ("ioc", "fok"):
        return taker_fee_bps
    return maker_fee_bps


@dataclass
class PricingConfig:
    """Pricing inputs read from ``policy.yaml: pricing``."""
    desired_net_bps: float = 50.0
    maker_fee_bps: float = 15.0
    taker_fee_bps: float = 25.0
    slippage_bps: float = 5.0
    spread_buffer_bps: float = 5.0
    profit_buffer_bps: float = 0.0
    cap_bps: Optional[float] = 300.0
    min_gross_take_profit_bps: float = 20.0
    spread_floor_bps: float = 0.0
    spread_cap_bps: float = 200.0
    spread_multiplier: float = 1.0
    spread_add_bps: float = 0.0
    crypto_tick_size: float = 0.01
    equity_tick_size: float = 0.01

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "PricingConfig":
        cfg = (policy or {}).get("pricing", {}) or {}
        defaults = cls()
        values = {}
        for name in defaults.__dataclass_fields__:
            if name in cfg:
                raw = cfg[name]
                values[name] = None if raw is None else float(raw)
        return cls(**values)

    def tick_size(self, is_crypto_symbol: bool) -> float:
        return self.crypto_tick_size if is_crypto_symbol else self.equity_tick_size


@dataclass(frozen=True)
class ExitPlan:
    entry_price: float
    required_exit_bps: float
    target_price: float
    breakeven_price: float
    fee_bps_round_trip: float
    entry_fee_bps: float
    exit_fee_bps: float
    min_net_profit_bps: float


def plan_exit(
    entry_price: float,
    config: PricingConfig,
    *,
    entry_fee_bps: float,
    exit_fee_bps: Optional[float] = None,
    current_spread_bps: float = 0.0,
    tick_size: Optional[float] = None,
    desired_net_bps: Optional[float] = None,
) -> ExitPlan:
    """
    Combine the pricing rules into one exit plan.

    ``entry_price`` should be the conservative fill basis (maximum observed
    fill price). The exit is a resting limit sell, so ``exit_fee_bps``
    defaults to the maker tier.
    """
    if entry_price <= 0:
        raise ValueError(f"entry_price must be positive, got {entry_price}")
    exit_fee = config.maker_fee_bps if exit_fee_bps is None else exit_fee_bps
    desired = config.desired_net_bps if desired_net_bps is None else desired_net_bps
    tick = config.crypto_tick_size if tick_size is None else tick_size
    fee_rt = entry_fee_bps + exit_fee

    summed = required_exit_bps(
        desired,
        fee_rt,
        config.slippage_bps,
        config.spread_buffer_bps,
        config.profit_buffer_bps,
        config.cap_bps,
        config.min_gross_take_profit_bps,
    )
    compounded = net_after_fees_required_bps(entry_fee_bps, exit_fee, desired)
    base = max(summed, compounded)
    required = spread_aware_required_bps(
        base,
        current_spread_bps,
        config.spread_floor_bps,
        config.spread_cap_bps,
        config.spread_multiplier,
        config.spread_add_bps,
    )
    return ExitPlan(
        entry_price=entry_price,
        required_exit_bps=required,
        target_price=target_sell_price(entry_price, required, tick),
        breakeven_price=breakeven_price(entry_price, entry_fee_bps, exit_fee, tick),
        fee_bps_round_trip=fee_rt,
        entry_fee_bps=entry_fee_bps,
        exit_fee_bps=exit_fee,
        min_net_profit_bps=desired,
    )
