import itertools
import logging
import threading
from typing import Callable, Optional

from src.shared.models import LONG, Account
from src.copy_trader.config import (
    ALIGN_CLOSE_DELAY_MAX, ALIGN_CLOSE_DELAY_MIN, ALIGN_DEVIATION_PCT, DEFAULT_PRICE_STEP,
)
from src.copy_trader.replication_policy import (
    apply_price_deviation, random_seconds, round_to_step,
)

logger = logging.getLogger(__name__)


class OrderTimer:
    """One-shot deferred actions that re-check live positions before acting.

    Every pending timer is registered here so shutdown() can cancel them.
    """

    def __init__(self, timer_factory: Callable = threading.Timer):
        self.timer_factory = timer_factory
        self._timers: dict[int, object] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def _schedule(self, delay: float, action: Callable, *args) -> Optional[int]:
        with self._lock:
            if self._closed:
                logger.warning("Timer service is shut down, not scheduling")
                return None
            timer_id = next(self._ids)
            timer = self.timer_factory(delay, self._fire, args=(timer_id, action) + args)
            timer.daemon = True
            self._timers[timer_id] = timer
        timer.start()
        return timer_id

    def _fire(self, timer_id: int, action: Callable, *args) -> None:
        with self._lock:
            self._timers.pop(timer_id, None)
        try:
            action(*args)
        except Exception:
            logger.exception(f"Deferred action {getattr(action, '__name__', action)} failed")

    def schedule_cancel_check(self, account: Account, client, symbol: str,
                              min_seconds: float, max_seconds: float) -> float:
        """Arm the stale-order check after a signal entry. Returns the delay."""
        delay = random_seconds(min_seconds, max_seconds)
        self._schedule(delay, self.cancel_if_position_held, account, client, symbol)
        logger.info(f"[{account.name}] Order check for {symbol} in {delay:.0f}s")
        return delay

    def schedule_align_close(self, account: Account, client, symbol: str, price: float,
                             price_step: float = DEFAULT_PRICE_STEP) -> float:
        delay = random_seconds(ALIGN_CLOSE_DELAY_MIN, ALIGN_CLOSE_DELAY_MAX)
        self._schedule(delay, self.close_if_position_held, account, client, symbol,
                       price, price_step)
        logger.info(f"[{account.name}] Align close for {symbol} in {delay:.1f}s")
        return delay

    def cancel_if_position_held(self, account: Account, client, symbol: str) -> bool:
        """Cancel pending orders only while a position is still held.

        No position means the entry order resolved on its own; nothing to do.
        """
        if not client.has_open_position(symbol):
            logger.info(f"[{account.name}] {symbol}: no position, order already resolved")
            return False
        cancelled = client.cancel_all_orders(symbol)
        logger.info(f"[{account.name}] {symbol}: position held, pending orders cancelled")
        return cancelled

    def close_if_position_held(self, account: Account, client, symbol: str, price: float,
                               price_step: float = DEFAULT_PRICE_STEP) -> int:
        """Close every position on symbol at a freshly deviated price."""
        positions = client.get_open_positions(symbol)
        if positions is None:
            logger.warning(f"[{account.name}] {symbol}: positions unavailable, align close skipped")
            return 0
        if not positions:
            logger.info(f"[{account.name}] {symbol}: position already closed")
            return 0

        closed = 0
        for position in positions:
            close_price = round_to_step(
                apply_price_deviation(price, ALIGN_DEVIATION_PCT, LONG), price_step
            )
            result = client.close_position(symbol, position.side, close_price, position.volume)
            if result.get("success"):
                closed += 1
                logger.info(
                    f"[{account.name}] Align close {symbol} {position.side} "
                    f"vol={position.volume} @ {close_price}"
                )
            else:
                logger.error(
                    f"[{account.name}] Align close {symbol} failed: {result.get('message')}"
                )
        return closed

    def shutdown(self) -> int:
        """Cancel every pending timer. Returns how many were cancelled."""
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            logger.info(f"Cancelled {len(timers)} pending timers")
        return len(timers)
