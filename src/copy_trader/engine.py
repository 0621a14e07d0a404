import logging
from typing import Callable, Optional

from src.shared.config import POLL_INTERVAL_SECONDS
from src.shared.models import (
    Account, BatchReport, ExecutionParams, ParsedAlignSignal, ParsedSignal, PositionEvent,
    TradeIntent, TradeResult,
)
from src.shared.notifier import send_message
from src.copy_trader.config import DEFAULT_PRICE_STEP
from src.copy_trader.execution_coordinator import CLIENT_NOT_INITIALIZED, ExecutionCoordinator
from src.copy_trader.order_timer import OrderTimer
from src.copy_trader.position_watcher import PositionWatcher
from src.copy_trader.replication_policy import (
    apply_signal_offsets, derive_exit_price, derive_open_params,
    derive_protective_prices, round_to_step,
)
from src.copy_trader.reports import format_batch_report
from src.copy_trader.signal_parser import (
    parse_align_signal, parse_trade_signal, price_step_from_text,
)

logger = logging.getLogger(__name__)

ALREADY_IN_POSITION = "already in position"
POSITION_NOT_FOUND = "position not found"
NO_POSITION = "no position"
POSITIONS_UNAVAILABLE = "could not fetch positions"
PRICE_UNAVAILABLE = "current price unavailable"


def _price_step(client, symbol: str, override: Optional[float] = None) -> float:
    """Explicit step, else the contract's priceUnit, else the default."""
    if override:
        return override
    contract = client.get_contract_info(symbol)
    return contract.price_step if contract else DEFAULT_PRICE_STEP


def _order_result(account: Account, response: dict, price: float, volume: float,
                  leverage: Optional[int]) -> TradeResult:
    if not response.get("success"):
        return TradeResult.failure(account, response.get("message") or "order rejected")
    return TradeResult(
        account_id=account.id,
        account_name=account.name,
        success=True,
        message="ok",
        order_id=response.get("order_id"),
        executed_price=price,
        executed_volume=volume,
        leverage=leverage,
    )


class CopyEngine:
    """Replicates master activity, manual commands and signals onto the roster."""

    def __init__(self, config_store, clients, coordinator: ExecutionCoordinator = None,
                 timer: OrderTimer = None, notify: Callable[[str], bool] = send_message,
                 poll_interval: float = POLL_INTERVAL_SECONDS):
        self.config_store = config_store
        self.clients = clients
        self.coordinator = coordinator or ExecutionCoordinator(config_store, clients)
        self.timer = timer or OrderTimer()
        self.notify = notify
        self.watcher = PositionWatcher(
            config_store, clients,
            on_opened=self.on_master_opened,
            on_closed=self.on_master_closed,
            interval=poll_interval,
        )

    # --- Lifecycle ---

    def start(self, watch: bool = True) -> int:
        count = self.clients.sync(self.config_store.get_accounts())
        logger.info(f"Engine started with {count} clients")
        if watch:
            self.watcher.start()
        return count

    def stop(self) -> None:
        self.watcher.stop()
        self.timer.shutdown()
        logger.info("Engine stopped")

    # --- Shared building blocks ---

    def _open_with_params(self, account: Account, client, intent: TradeIntent,
                          contract=None) -> TradeResult:
        """Derive per-account params and submit the opening order."""
        settings = self.config_store.get_settings()
        limit = self.config_store.get_contract_limit(intent.symbol)
        params: ExecutionParams = derive_open_params(intent, account, settings, contract, limit)
        if params.skipped:
            return TradeResult.failure(account, params.skip_reason, skipped=True)

        response = client.open_position(
            intent.symbol, intent.side, params.price, params.volume, params.leverage,
            take_profit=params.take_profit,
        )
        return _order_result(account, response, params.price, params.volume, params.leverage)

    # --- Watcher callbacks ---

    def on_master_opened(self, event: PositionEvent) -> Optional[BatchReport]:
        settings = self.config_store.get_settings()
        if not settings.copy_open_positions:
            logger.info("Open replication disabled, ignoring master open")
            return None
        slaves = self.config_store.get_slave_accounts()
        if not slaves:
            return None

        position = event.position
        notional = position.margin * position.leverage if position.margin > 0 else None
        intent = TradeIntent(
            symbol=position.symbol,
            side=position.side,
            price=position.entry_price,
            notional_usd=notional,
            leverage=position.leverage,
        )

        def operation(account, client):
            contract = client.get_contract_info(intent.symbol)
            return self._open_with_params(account, client, intent, contract)

        report = self.coordinator.execute_batch(operation, slaves)
        report.title = f"Copy open {position.symbol} {position.side.upper()}"
        self.notify(format_batch_report(report))
        return report

    def on_master_closed(self, event: PositionEvent) -> Optional[BatchReport]:
        settings = self.config_store.get_settings()
        if not settings.copy_close_positions:
            logger.info("Close replication disabled, ignoring master close")
            return None
        slaves = self.config_store.get_slave_accounts()
        if not slaves:
            return None

        symbol, side = event.position.symbol, event.position.side

        def operation(account, client):
            positions = client.get_open_positions(symbol)
            if positions is None:
                return TradeResult.failure(account, POSITIONS_UNAVAILABLE)
            position = next((p for p in positions if p.side == side), None)
            if position is None:
                return TradeResult.failure(account, POSITION_NOT_FOUND)

            price = client.get_current_price(symbol)
            if price is None:
                return TradeResult.failure(account, PRICE_UNAVAILABLE)

            step = _price_step(client, symbol)
            exit_price = round_to_step(derive_exit_price(price, side, account, settings), step)
            response = client.close_position(symbol, side, exit_price, position.volume)
            return _order_result(account, response, exit_price, position.volume, position.leverage)

        report = self.coordinator.execute_batch(operation, slaves)
        report.title = f"Copy close {symbol} {side.upper()}"
        self.notify(format_batch_report(report))
        return report

    # --- Manual operations ---

    def open_position(self, side: str, symbol: str, price: float, notional_usd: float,
                      leverage: int, price_step: float = None) -> BatchReport:
        accounts = self.config_store.get_enabled_accounts()
        if not accounts:
            return BatchReport(title=f"Open {symbol} {side.upper()}")

        first_client = self.clients.get_client(accounts[0].id)
        contract = first_client.get_contract_info(symbol) if first_client else None

        intent = TradeIntent(
            symbol=symbol, side=side, price=price, notional_usd=notional_usd,
            leverage=leverage, price_step=price_step,
        )

        def operation(account, client):
            return self._open_with_params(account, client, intent, contract)

        report = self.coordinator.execute_batch(operation, accounts)
        report.title = f"Open {symbol} {side.upper()}"
        return report

    def close_position(self, symbol: str, price: float = None,
                       price_step: float = None) -> BatchReport:
        settings = self.config_store.get_settings()
        accounts = self.config_store.get_enabled_accounts()

        def operation(account, client):
            positions = client.get_open_positions(symbol)
            if positions is None:
                return TradeResult.failure(account, POSITIONS_UNAVAILABLE)
            if not positions:
                return TradeResult.failure(account, NO_POSITION, skipped=True)

            step = _price_step(client, symbol, price_step)
            reference = price
            if reference is None:
                reference = client.get_current_price(symbol)
            results = []
            for position in positions:
                base = reference if reference is not None else position.entry_price
                exit_price = round_to_step(
                    derive_exit_price(base, position.side, account, settings), step
                )
                response = client.close_position(symbol, position.side, exit_price,
                                                  position.volume)
                results.append(_order_result(account, response, exit_price,
                                             position.volume, position.leverage))
            return results

        report = self.coordinator.execute_batch(operation, accounts)
        report.title = f"Close {symbol}"
        return report

    def set_tp_sl(self, symbol: str, side: str, take_profit: float = None,
                  stop_loss: float = None, price_step: float = None) -> BatchReport:
        if take_profit is None and stop_loss is None:
            raise ValueError("Take-profit or stop-loss price required")

        settings = self.config_store.get_settings()
        if settings.copy_tp_sl:
            accounts = self.config_store.get_enabled_accounts()
        else:
            master = self.config_store.get_master_account()
            accounts = [master] if master else []

        def operation(account, client):
            step = _price_step(client, symbol, price_step)
            tp, sl = derive_protective_prices(side, take_profit, stop_loss, account, settings)
            tp = round_to_step(tp, step) if tp is not None else None
            sl = round_to_step(sl, step) if sl is not None else None
            response = client.set_tp_sl(symbol, side, take_profit=tp, stop_loss=sl)
            if not response.get("success"):
                return TradeResult.failure(account, response.get("message") or "TP/SL rejected")
            parts = []
            if tp is not None:
                parts.append(f"TP {tp}")
            if sl is not None:
                parts.append(f"SL {sl}")
            return TradeResult(
                account_id=account.id, account_name=account.name, success=True,
                message=" ".join(parts),
            )

        report = self.coordinator.execute_batch(operation, accounts)
        report.title = f"TP/SL {symbol} {side.upper()}"
        return report

    def cancel_all_orders(self, symbol: str) -> BatchReport:
        def operation(account, client):
            if client.cancel_all_orders(symbol):
                return TradeResult(account_id=account.id, account_name=account.name,
                                   success=True, message="orders cancelled")
            return TradeResult.failure(account, "cancel failed")

        report = self.coordinator.execute_batch(operation,
                                                self.config_store.get_enabled_accounts())
        report.title = f"Cancel orders {symbol}"
        return report

    def close_all_positions(self) -> BatchReport:
        """Close every open position on every enabled account at the current price."""
        settings = self.config_store.get_settings()

        def operation(account, client):
            positions = client.get_open_positions()
            if positions is None:
                return TradeResult.failure(account, POSITIONS_UNAVAILABLE)
            if not positions:
                return TradeResult.failure(account, NO_POSITION, skipped=True)

            results = []
            for position in positions:
                price = client.get_current_price(position.symbol)
                if price is None:
                    results.append(TradeResult.failure(
                        account, f"{position.symbol}: {PRICE_UNAVAILABLE}"
                    ))
                    continue
                step = _price_step(client, position.symbol)
                exit_price = round_to_step(
                    derive_exit_price(price, position.side, account, settings), step
                )
                response = client.close_position(position.symbol, position.side, exit_price,
                                                  position.volume)
                results.append(_order_result(account, response, exit_price,
                                             position.volume, position.leverage))
            return results

        report = self.coordinator.execute_batch(operation,
                                                self.config_store.get_enabled_accounts())
        report.title = "Close all positions"
        return report

    def cancel_order(self, account: Account, symbol: str, order_id: str) -> TradeResult:
        """Cancel one pending order on a single account."""
        client = self.clients.get_client(account.id)
        if client is None:
            return TradeResult.failure(account, CLIENT_NOT_INITIALIZED)
        if client.cancel_order(symbol, order_id):
            return TradeResult(account_id=account.id, account_name=account.name,
                               success=True, order_id=order_id,
                               message=f"order {order_id} cancelled")
        return TradeResult.failure(account, f"could not cancel order {order_id}")

    # --- Roster ---

    def reload_clients(self) -> int:
        """Bring exchange clients in line with the current roster."""
        count = self.clients.sync(self.config_store.get_accounts())
        logger.info(f"Clients synced: {count} active")
        return count

    # --- Signals ---

    def handle_signal_text(self, text: str) -> Optional[BatchReport]:
        """Route forwarded text to the align or trade flow. None when not a signal."""
        if not self.config_store.get_settings().signals_enabled:
            logger.debug("Signals disabled, ignoring text")
            return None

        align = parse_align_signal(text)
        if align:
            return self.handle_align_signal(align, price_step_from_text(text))

        signal = parse_trade_signal(text)
        if signal:
            return self.handle_trade_signal(signal, price_step_from_text(text))
        return None

    def handle_trade_signal(self, signal: ParsedSignal,
                            price_step: float = DEFAULT_PRICE_STEP) -> Optional[BatchReport]:
        settings = self.config_store.get_settings()
        if not settings.signals_enabled:
            return None

        entry, take_profit = apply_signal_offsets(signal.entry_price, signal.take_profit, settings)
        intent = TradeIntent(
            symbol=signal.full_symbol,
            side=signal.side,
            price=entry,
            price_step=price_step,
            take_profit=take_profit,
        )
        logger.info(
            f"Signal {signal.full_symbol} {signal.side}: entry {entry:.8g}, TP {take_profit:.8g}"
        )

        def operation(account, client):
            if client.has_open_position(intent.symbol):
                return TradeResult.failure(account, ALREADY_IN_POSITION)
            client.cancel_all_orders(intent.symbol)

            contract = client.get_contract_info(intent.symbol)
            result = self._open_with_params(account, client, intent, contract)
            if result.success:
                self.timer.schedule_cancel_check(
                    account, client, intent.symbol,
                    settings.signal_cancel_time_min, settings.signal_cancel_time_max,
                )
            return result

        report = self.coordinator.execute_batch(operation,
                                                self.config_store.get_enabled_accounts())
        report.title = f"Signal {signal.full_symbol} {signal.side.upper()}"
        return report

    def handle_align_signal(self, signal: ParsedAlignSignal,
                            price_step: float = DEFAULT_PRICE_STEP) -> Optional[BatchReport]:
        if not self.config_store.get_settings().signals_enabled:
            return None

        symbol = signal.full_symbol

        def operation(account, client):
            client.cancel_all_orders(symbol)
            positions = client.get_open_positions(symbol)
            if positions is None:
                return TradeResult.failure(account, POSITIONS_UNAVAILABLE)
            if not positions:
                return TradeResult.failure(account, NO_POSITION, skipped=True)
            delay = self.timer.schedule_align_close(account, client, symbol, signal.price,
                                                    price_step)
            return TradeResult(
                account_id=account.id, account_name=account.name, success=True,
                message=f"close in {delay:.1f}s",
            )

        report = self.coordinator.execute_batch(operation,
                                                self.config_store.get_enabled_accounts())
        report.title = f"Align {symbol}"
        return report

    # --- Views ---

    def get_balances(self) -> list:
        """[(account, AccountBalance or None)] for enabled accounts."""
        rows = []
        for account in self.config_store.get_enabled_accounts():
            client = self.clients.get_client(account.id)
            rows.append((account, client.get_balance() if client else None))
        return rows

    def get_positions(self) -> list:
        """[(account, positions list or None)] for enabled accounts."""
        rows = []
        for account in self.config_store.get_enabled_accounts():
            client = self.clients.get_client(account.id)
            rows.append((account, client.get_open_positions() if client else None))
        return rows

    def get_orders(self, symbol: str = None) -> list:
        """[(account, open orders list or None)] for enabled accounts."""
        rows = []
        for account in self.config_store.get_enabled_accounts():
            client = self.clients.get_client(account.id)
            rows.append((account, client.get_open_orders(symbol) if client else None))
        return rows
