import logging
import time
from typing import Callable

from src.shared.models import Account, BatchReport, TradeResult
from src.copy_trader.replication_policy import random_delay_ms

logger = logging.getLogger(__name__)

CLIENT_NOT_INITIALIZED = "client not initialized"


class ExecutionCoordinator:
    """Run one operation across accounts, one after another.

    `operation(account, client)` returns a TradeResult, or a list of them
    when one account yields several results (closing several positions).
    Between accounts the coordinator sleeps a freshly drawn random delay.
    """

    def __init__(self, config_store, clients, sleep: Callable[[float], None] = time.sleep):
        self.config_store = config_store
        self.clients = clients
        self.sleep = sleep

    def execute_batch(self, operation: Callable, accounts: list) -> BatchReport:
        settings = self.config_store.get_settings()
        batch_start = time.monotonic()
        results = []

        for index, account in enumerate(accounts):
            if index > 0:
                delay_ms = random_delay_ms(settings.delay_min_ms, settings.delay_max_ms)
                if delay_ms > 0:
                    logger.debug(f"[{account.name}] Waiting {delay_ms}ms")
                    self.sleep(delay_ms / 1000)
            results.extend(self._run_one(operation, account))

        total_ms = int((time.monotonic() - batch_start) * 1000)
        report = BatchReport(results=results, total_latency_ms=total_ms)
        logger.info(
            f"Batch done: {report.success_count}/{len(results)} succeeded in {total_ms}ms"
        )
        return report

    def _run_one(self, operation: Callable, account: Account) -> list:
        start = time.monotonic()
        client = self.clients.get_client(account.id)
        if client is None:
            logger.error(f"[{account.name}] No client")
            outcome = [TradeResult.failure(account, CLIENT_NOT_INITIALIZED)]
        else:
            try:
                outcome = operation(account, client)
            except Exception as e:
                logger.error(f"[{account.name}] Operation failed: {e}")
                outcome = TradeResult.failure(account, str(e) or type(e).__name__)

        if not isinstance(outcome, list):
            outcome = [outcome]

        latency_ms = int((time.monotonic() - start) * 1000)
        for result in outcome:
            if result.latency_ms is None:
                result.latency_ms = latency_ms
            if not result.success:
                logger.warning(f"[{account.name}] {result.message}")
        return outcome
