"""Symbol normalization utilities for tradable instruments.

Internal maps are keyed by the canonical form: crypto pairs as ``BASE/QUOTE``
(``BTC/USD``) and equities as the bare ticker (``AAPL``). The broker's order
and position endpoints use a compact form (``BTCUSD``); conversion happens
explicitly at that boundary and nowhere else.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

DEFAULT_QUOTE = "USD"

# Quote suffixes that the compact broker form glues onto the base.
QUOTE_SUFFIXES: Tuple[str, ...] = (
    "USDC",
    "USDT",
    "USD",
)

_BASE_ALIAS_MAP: Dict[str, str] = {
    "XBT": "BTC",
}


def canonical_base(base: str) -> str:
    """Return the canonical base asset ticker (e.g., XBT -> BTC)."""

    if not base:
        return ""
    ticker = base.upper()
    return _BASE_ALIAS_MAP.get(ticker, ticker)


def normalize_symbol(symbol: Optional[str]) -> str:
    """Normalize any symbol variant to its canonical key.

    ``btc-usd``, ``BTC_USD``, ``BTCUSD`` and ``BTC/USD`` all become
    ``BTC/USD``; an equity ticker such as ``aapl`` becomes ``AAPL``.
    """

    if not symbol:
        return ""

    token = str(symbol).strip().upper().replace(" ", "")
    if not token:
        return ""

    for delim in ("-", "_", ":"):
        token = token.replace(delim, "/")
    while "//" in token:
        token = token.replace("//", "/")
    token = token.strip("/")

    if "/" in token:
        base, quote = token.split("/", 1)
        return f"{canonical_base(base)}/{quote or DEFAULT_QUOTE}"

    for quote in QUOTE_SUFFIXES:
        if token.endswith(quote) and len(token) > len(quote):
            base = token[: -len(quote)]
            return f"{canonical_base(base)}/{quote}"

    return token


def is_crypto(symbol: Optional[str]) -> bool:
    return "/" in normalize_symbol(symbol)


def is_equity(symbol: Optional[str]) -> bool:
    normalized = normalize_symbol(symbol)
    return bool(normalized) and "/" not in normalized


def to_broker_symbol(symbol: Optional[str]) -> str:
    """Canonical key -> compact broker form (``BTC/USD`` -> ``BTCUSD``)."""

    return normalize_symbol(symbol).replace("/", "")


def from_broker_symbol(symbol: Optional[str]) -> str:
    """Compact broker form -> canonical key (``BTCUSD`` -> ``BTC/USD``)."""

    return normalize_symbol(symbol)


__all__ = [
    "DEFAULT_QUOTE",
    "QUOTE_SUFFIXES",
    "canonical_base",
    "normalize_symbol",
    "is_crypto",
    "is_equity",
    "to_broker_symbol",
    "from_broker_symbol",
]
