"""Extract trade and align intents from forwarded signal messages.

A trade signal looks like:

    DOUBLE LONG #BTC_USDT
    Price DEX $0.00952
    Price MEXC $0.00961

An align signal looks like:

    ✅ #BTC Aligned
    Price MEXC $0.00955

Anything that does not match is simply not a signal; nothing here raises.
"""
import math
import re
from typing import Optional

from src.shared.models import LONG, SHORT, ParsedAlignSignal, ParsedSignal
from src.copy_trader.config import DEFAULT_PRICE_STEP

TICKER_RE = re.compile(r"#([A-Z0-9]+)_USDT", re.IGNORECASE)
DEX_PRICE_RE = re.compile(r"Price\s+DEX\s+\$([\d.]+)", re.IGNORECASE)
MEXC_PRICE_RE = re.compile(r"Price\s+MEXC\s+\$([\d.]+)", re.IGNORECASE)

ALIGN_TICKER_RE = re.compile(r"✅\s*#([A-Z0-9]+)", re.IGNORECASE)
ALIGN_PRICE_RE = re.compile(r"Price\s*MEXC\s*\$?\s*([0-9]*\.?[0-9]+)", re.IGNORECASE)


def _positive_float(raw: str) -> Optional[float]:
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def infer_side(text: str) -> str:
    """LONG wins over SHORT when both appear; no keyword means short."""
    upper = text.upper()
    if "LONG" in upper:
        return LONG
    if "SHORT" in upper:
        return SHORT
    return SHORT


def parse_trade_signal(text: str) -> Optional[ParsedSignal]:
    ticker = TICKER_RE.search(text)
    if not ticker:
        return None

    dex = DEX_PRICE_RE.search(text)
    mexc = MEXC_PRICE_RE.search(text)
    if not dex or not mexc:
        return None

    take_profit = _positive_float(dex.group(1))
    entry_price = _positive_float(mexc.group(1))
    if take_profit is None or entry_price is None:
        return None

    symbol = ticker.group(1).upper()
    return ParsedSignal(
        symbol=symbol,
        full_symbol=f"{symbol}_USDT",
        entry_price=entry_price,
        take_profit=take_profit,
        side=infer_side(text),
    )


def parse_align_signal(text: str) -> Optional[ParsedAlignSignal]:
    ticker = ALIGN_TICKER_RE.search(text)
    if not ticker:
        return None
    if "aligned" not in text.lower():
        return None

    price_match = ALIGN_PRICE_RE.search(text)
    if not price_match:
        return None
    price = _positive_float(price_match.group(1))
    if price is None:
        return None

    symbol = ticker.group(1).upper()
    return ParsedAlignSignal(symbol=symbol, full_symbol=f"{symbol}_USDT", price=price)


def price_step_from_string(value: str, fallback: float = DEFAULT_PRICE_STEP) -> float:
    """Rounding step implied by the number of decimals in a price string."""
    value = value.strip()
    if _positive_float(value) is None:
        return fallback
    if "." not in value:
        return 1.0
    decimals = len(value.split(".", 1)[1])
    if decimals == 0:
        return 1.0
    if decimals > 10:
        return fallback
    return 10 ** -decimals


def price_step_from_text(text: str, fallback: float = DEFAULT_PRICE_STEP) -> float:
    match = ALIGN_PRICE_RE.search(text)
    if not match:
        return fallback
    return price_step_from_string(match.group(1), fallback)
