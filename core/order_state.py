"""
Core: Order State

Broker order status mapping and the poll-with-timeout primitive used while
waiting for fills.

States: NEW → OPEN → PARTIAL_FILL → (FILLED | CANCELED | EXPIRED | REJECTED | REPLACED | FAILED)

poll_order() returns one of:
- Filled: the order filled completely
- Terminal: the order reached another terminal status (may carry a partial fill)
- TimedOut: still working at the deadline; a best-effort cancel was issued
"""

from enum import Enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union
import logging
import time

from core.exceptions import HttpError, NetworkError, OrderRejected

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """Order lifecycle states"""
    NEW = "new"                      # Accepted locally, not yet acknowledged
    OPEN = "open"                    # Working at the broker
    PARTIAL_FILL = "partial_fill"    # Partially filled, still working
    FILLED = "filled"
    CANCELED = "canceled"
    EXPIRED = "expired"
    REJECTED = "rejected"
    REPLACED = "replaced"            # Superseded by a replacement order id
    FAILED = "failed"                # Failed to submit


TERMINAL_STATUSES = {
    OrderStatus.FILLED,
    OrderStatus.CANCELED,
    OrderStatus.EXPIRED,
    OrderStatus.REJECTED,
    OrderStatus.REPLACED,
    OrderStatus.FAILED,
}

_BROKER_STATUS_MAP = {
    "new": OrderStatus.OPEN,
    "accepted": OrderStatus.OPEN,
    "pending_new": OrderStatus.NEW,
    "accepted_for_bidding": OrderStatus.OPEN,
    "pending_cancel": OrderStatus.OPEN,
    "pending_replace": OrderStatus.OPEN,
    "held": OrderStatus.OPEN,
    "calculated": OrderStatus.OPEN,
    "stopped": OrderStatus.OPEN,
    "done_for_day": OrderStatus.OPEN,
    "partially_filled": OrderStatus.PARTIAL_FILL,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "cancelled": OrderStatus.CANCELED,
    "expired": OrderStatus.EXPIRED,
    "rejected": OrderStatus.REJECTED,
    "suspended": OrderStatus.REJECTED,
    "replaced": OrderStatus.REPLACED,
}


def map_broker_status(status: Optional[str]) -> OrderStatus:
    """Map a broker status string onto OrderStatus (unknown → OPEN)."""
    if not status:
        return OrderStatus.OPEN
    mapped = _BROKER_STATUS_MAP.get(str(status).lower())
    if mapped is None:
        logger.debug(f"Unknown broker order status '{status}', treating as open")
        return OrderStatus.OPEN
    return mapped


def is_terminal(status: Union[OrderStatus, str, None]) -> bool:
    if not isinstance(status, OrderStatus):
        status = map_broker_status(status)
    return status in TERMINAL_STATUSES


def filled_qty(order: Optional[Dict[str, Any]]) -> float:
    if not order:
        return 0.0
    try:
        return float(order.get("filled_qty") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def avg_fill_price(order: Optional[Dict[str, Any]]) -> Optional[float]:
    if not order:
        return None
    try:
        price = float(order.get("filled_avg_price") or 0.0)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


def order_qty(order: Optional[Dict[str, Any]]) -> float:
    if not order:
        return 0.0
    try:
        return float(order.get("qty") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def remaining_qty(order: Optional[Dict[str, Any]]) -> float:
    return max(0.0, order_qty(order) - filled_qty(order))


@dataclass(frozen=True)
class Filled:
    order: Dict[str, Any]
    filled_qty: float
    avg_price: Optional[float]


@dataclass(frozen=True)
class Terminal:
    order: Dict[str, Any]
    status: OrderStatus
    filled_qty: float


@dataclass(frozen=True)
class TimedOut:
    order: Optional[Dict[str, Any]]
    filled_qty: float
    cancel_requested: bool


PollResult = Union[Filled, Terminal, TimedOut]


def safe_cancel(broker, order_id: str) -> bool:
    """Best-effort cancel; failures are logged, never raised."""
    try:
        broker.cancel_order(order_id)
        return True
    except HttpError as exc:
        if exc.status in (404, 422):
            logger.info(f"Cancel skipped for {order_id}: order already closed (HTTP {exc.status})")
        else:
            logger.warning(f"Cancel failed for {order_id}: {exc}")
    except (NetworkError, OrderRejected) as exc:
        logger.warning(f"Cancel failed for {order_id}: {exc}")
    return False


def poll_order(broker, order_id: str, *, timeout_seconds: float = 60.0,
               interval_seconds: float = 3.0, cancel_on_timeout: bool = True,
               sleep: Callable[[float], None] = time.sleep,
               clock: Callable[[], float] = time.monotonic) -> PollResult:
    """
    Poll an order until it fills, reaches another terminal status, or times out.

    Transient lookup errors are logged and polling continues. On timeout the
    order is cancelled (best effort) and looked up once more so a fill that
    raced the cancel is still reported as Filled.
    """
    deadline = clock() + timeout_seconds
    last: Optional[Dict[str, Any]] = None

    while True:
        try:
            order = broker.get_order(order_id)
        except (NetworkError, HttpError) as exc:
            logger.warning(f"Order poll failed for {order_id}: {exc}")
            order = None

        if order:
            last = order
            status = map_broker_status(order.get("status"))
            if status == OrderStatus.FILLED:
                return Filled(order=order, filled_qty=filled_qty(order), avg_price=avg_fill_price(order))
            if status in TERMINAL_STATUSES:
                return Terminal(order=order, status=status, filled_qty=filled_qty(order))

        remaining = deadline - clock()
        if remaining <= 0:
            break
        sleep(min(interval_seconds, remaining))

    cancel_requested = False
    if cancel_on_timeout:
        cancel_requested = safe_cancel(broker, order_id)
        try:
            final = broker.get_order(order_id)
        except (NetworkError, HttpError) as exc:
            logger.warning(f"Post-cancel lookup failed for {order_id}: {exc}")
            final = None
        if final:
            last = final
            if map_broker_status(final.get("status")) == OrderStatus.FILLED:
                logger.info(f"Order {order_id} filled while timing out")
                return Filled(order=final, filled_qty=filled_qty(final), avg_price=avg_fill_price(final))

    logger.info(f"Order {order_id} timed out after {timeout_seconds:.0f}s (filled_qty={filled_qty(last)})")
    return TimedOut(order=last, filled_qty=filled_qty(last), cancel_requested=cancel_requested)
