"""Per-account execution parameters derived from a reference trade.

The master account executes the reference parameters as given. Every
other account gets an independently drawn price offset (always against
the trader), a leverage drawn below the reference, and a volume capped by
its own position limit and the symbol's contract ceiling.
"""
import logging
import math
import random
from typing import Optional

from src.shared.models import (
    Account, ContractInfo, ExecutionParams, GlobalSettings, TradeIntent, opposite_side,
    LONG,
)
from src.copy_trader.config import DEFAULT_CONTRACT_SIZE, DEFAULT_PRICE_STEP

logger = logging.getLogger(__name__)

VOLUME_TOO_SMALL = "volume too small"

# OS entropy: no seed is shared between accounts, batches or processes
_rng = random.SystemRandom()


def random_delay_ms(min_ms: int, max_ms: int) -> int:
    """Uniform integer delay in [min_ms, max_ms] inclusive."""
    if max_ms < min_ms:
        raise ValueError(f"min_ms ({min_ms}) > max_ms ({max_ms})")
    return _rng.randint(int(min_ms), int(max_ms))


def random_seconds(min_s: float, max_s: float) -> float:
    if max_s < min_s:
        raise ValueError(f"min_s ({min_s}) > max_s ({max_s})")
    return _rng.uniform(min_s, max_s)


def apply_price_deviation(price: float, max_deviation_pct: float, direction: str) -> float:
    """Shift price by a random fraction of max_deviation_pct.

    "long" pushes the price up (0..+d%), "short" pushes it down (0..-d%).
    """
    deviation = _rng.uniform(0, max_deviation_pct)
    if direction == LONG:
        return price * (1 + deviation / 100)
    return price * (1 - deviation / 100)


def round_to_step(value: float, step: Optional[float]) -> float:
    if not step or step <= 0:
        return value
    decimals = 0
    text = f"{step:.10f}".rstrip("0")
    if "." in text:
        decimals = min(10, len(text.split(".", 1)[1]))
    return round(round(value / step) * step, decimals)


def derive_leverage(reference: Optional[int], account: Account, spread: int) -> int:
    """Leverage for a non-master account, always within its own bounds.

    Drawn from [max(1, reference - spread), min(reference, leverage_max)],
    then clipped to [leverage_min, leverage_max]. Without a reference the
    account's own range is used.
    """
    if reference is None:
        low, high = account.leverage_min, account.leverage_max
    else:
        low = max(1, reference - spread)
        high = max(low, min(reference, account.leverage_max))
    drawn = _rng.randint(low, max(low, high))
    return min(max(drawn, account.leverage_min), account.leverage_max)


def compute_volume(notional: float, price: float, contract_size: float,
                   contract_limit: Optional[int] = None) -> int:
    """Whole contracts affordable for notional, honouring the contract ceiling."""
    unit = price * contract_size
    if unit <= 0 or notional <= 0:
        return 0
    if contract_limit:
        notional = min(notional, contract_limit * unit)
    return max(0, math.floor(notional / unit))


def derive_open_params(intent: TradeIntent, account: Account, settings: GlobalSettings,
                       contract: Optional[ContractInfo] = None,
                       contract_limit: Optional[int] = None) -> ExecutionParams:
    contract_size = contract.contract_size if contract else DEFAULT_CONTRACT_SIZE
    step = intent.price_step or (contract.price_step if contract else DEFAULT_PRICE_STEP)

    # The step-rounded intent is the reference; the master executes it unchanged.
    price = round_to_step(intent.price, step)
    take_profit = intent.take_profit
    if take_profit is not None:
        take_profit = round_to_step(take_profit, step)

    if account.is_master:
        if intent.leverage is None:
            leverage = derive_leverage(None, account, settings.leverage_spread)
        else:
            leverage = intent.leverage
    else:
        price = apply_price_deviation(price, settings.price_deviation_pct, intent.side)
        if take_profit is not None:
            take_profit = apply_price_deviation(
                take_profit, settings.price_deviation_pct, opposite_side(intent.side)
            )
        leverage = derive_leverage(intent.leverage, account, settings.leverage_spread)
        price = round_to_step(price, step)
        if take_profit is not None:
            take_profit = round_to_step(take_profit, step)

    notional = account.max_position_usd
    if intent.notional_usd is not None:
        notional = min(intent.notional_usd, account.max_position_usd)
    volume = compute_volume(notional, price, contract_size, contract_limit)

    params = ExecutionParams(
        price=price, leverage=leverage, volume=volume, take_profit=take_profit,
    )
    if volume < 1:
        params.skip_reason = VOLUME_TOO_SMALL
        logger.info(
            f"[{account.name}] {intent.symbol}: ${notional:.2f} buys no whole contract "
            f"at {price} (contract size {contract_size})"
        )
    return params


def derive_exit_price(price: float, position_side: str, account: Account,
                      settings: GlobalSettings) -> float:
    """Close price; non-master exits deviate against the trader."""
    if account.is_master:
        return price
    return apply_price_deviation(price, settings.price_deviation_pct, opposite_side(position_side))


def derive_protective_prices(side: str, take_profit: Optional[float],
                             stop_loss: Optional[float], account: Account,
                             settings: GlobalSettings) -> tuple:
    """TP deviates opposite to the position side, SL in the same direction."""
    if account.is_master:
        return take_profit, stop_loss
    if take_profit is not None:
        take_profit = apply_price_deviation(
            take_profit, settings.price_deviation_pct, opposite_side(side)
        )
    if stop_loss is not None:
        stop_loss = apply_price_deviation(stop_loss, settings.price_deviation_pct, side)
    return take_profit, stop_loss


def apply_signal_offsets(entry_price: float, take_profit: float,
                         settings: GlobalSettings) -> tuple:
    """Shift signal reference prices by the configured signal offsets."""
    entry = entry_price * (1 + settings.signal_entry_offset_pct / 100)
    tp = take_profit * (1 + settings.signal_tp_offset_pct / 100)
    return entry, tp
