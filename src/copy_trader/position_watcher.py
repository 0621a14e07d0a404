import logging
import threading
from typing import Callable, Optional

from src.shared.models import PositionEvent, PositionSnapshot
from src.copy_trader.config import DEFAULT_POLL_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

OPENED = "opened"
CLOSED = "closed"


def diff_positions(previous: list, current: list) -> tuple:
    """Compare two snapshot lists keyed by (symbol, side).

    Returns (opened, closed): positions only in current, positions only in
    previous. Size or price changes on a key present in both are ignored.
    """
    before = {p.key: p for p in previous}
    after = {p.key: p for p in current}
    opened = [p for key, p in after.items() if key not in before]
    closed = [p for key, p in before.items() if key not in after]
    return opened, closed


class PositionWatcher:
    """Poll the master account and report positions that appeared or vanished.

    The snapshot starts empty, so positions already held when watching
    begins are reported as opened on the first tick.
    """

    def __init__(self, config_store, clients,
                 on_opened: Callable[[PositionEvent], None],
                 on_closed: Callable[[PositionEvent], None],
                 interval: float = DEFAULT_POLL_INTERVAL_SECONDS):
        self.config_store = config_store
        self.clients = clients
        self.on_opened = on_opened
        self.on_closed = on_closed
        self.interval = interval
        self._snapshots: dict[str, list] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def snapshot(self, account_id: str) -> list:
        return list(self._snapshots.get(account_id, []))

    def reset(self, account_id: str = None) -> None:
        if account_id is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(account_id, None)

    def poll_once(self) -> list:
        """Run one tick against the current master. Returns emitted events."""
        master = self.config_store.get_master_account()
        if master is None:
            logger.debug("No enabled master account, nothing to watch")
            return []

        client = self.clients.get_client(master.id)
        if client is None:
            logger.warning(f"[{master.name}] Master has no client, skipping tick")
            return []

        current: Optional[list] = client.get_open_positions()
        if current is None:
            logger.warning(f"[{master.name}] Position fetch failed, keeping last snapshot")
            return []

        opened, closed = diff_positions(self._snapshots.get(master.id, []), current)
        self._snapshots[master.id] = list(current)

        events = [PositionEvent(OPENED, master.id, p) for p in opened]
        events += [PositionEvent(CLOSED, master.id, p) for p in closed]

        for event in events:
            self._dispatch(master.name, event)
        return events

    def _dispatch(self, master_name: str, event: PositionEvent) -> None:
        position: PositionSnapshot = event.position
        logger.info(
            f"[{master_name}] Master {event.kind}: {position.symbol} {position.side} "
            f"vol={position.volume} @ {position.entry_price}"
        )
        callback = self.on_opened if event.kind == OPENED else self.on_closed
        try:
            callback(event)
        except Exception:
            logger.exception(f"Handler for {event.kind} {position.symbol} failed")

    def _run(self) -> None:
        logger.info(f"Position watcher started (interval {self.interval}s)")
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Position watcher tick failed")
            self._stop.wait(self.interval)
        logger.info("Position watcher stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="position-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
