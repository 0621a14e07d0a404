"""Text command surface for the copy engine.

Trading:
    /s TICKER PRICE USD LEVERAGE   open short on all enabled accounts
    /l TICKER PRICE USD LEVERAGE   open long
    /cl TICKER [PRICE]             close every position on TICKER
    /closeall                      close every position on every account
    /tp PRICE, /sl PRICE           protect the last position opened here
    /tpsl TICKER SIDE TP SL        explicit TP/SL, "-" for none
    /cancel TICKER                 cancel pending orders
    /cancelorder ACCOUNT TICKER ID cancel one order on one account

Views: /balance, /positions, /orders [TICKER], /help

Roster and settings:
    /accounts, /addacc NAME TOKEN [PROXY], /delacc ACCOUNT,
    /master ACCOUNT, /toggle ACCOUNT, /setacc ACCOUNT FIELD VALUE,
    /settings, /set KEY VALUE, /limit TICKER [N]

ACCOUNT is a roster number, name or id. Any other text is handed to
signal processing.
"""
import logging
from dataclasses import fields
from typing import Optional

from src.shared.config import TELEGRAM_USER_ID
from src.shared.models import LONG, SHORT, GlobalSettings
from src.shared.mexc_client import CLOSE_LONG, OPEN_LONG, OPEN_SHORT
from src.copy_trader.config import MAX_MANUAL_LEVERAGE
from src.copy_trader.reports import format_batch_report, format_result_line
from src.copy_trader.signal_parser import price_step_from_string

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
/s TICKER PRICE USD LEV - open short
/l TICKER PRICE USD LEV - open long
/cl TICKER [PRICE] - close positions
/tp PRICE - take-profit for the last opened position
/sl PRICE - stop-loss for the last opened position
/tpsl TICKER SIDE TP SL - set TP/SL ("-" for none)
/closeall - close every position on every account
/cancel TICKER - cancel pending orders
/cancelorder ACCOUNT TICKER ID - cancel one order
/balance - account balances
/positions - open positions
/orders [TICKER] - pending orders
/accounts - roster
/addacc NAME TOKEN [PROXY] - add an account
/delacc ACCOUNT - delete an account
/master ACCOUNT - make an account master
/toggle ACCOUNT - enable or disable an account
/setacc ACCOUNT FIELD VALUE - edit max, levmin, levmax, name, token or proxy
/settings - replication settings
/set KEY VALUE - change a setting
/limit TICKER [N] - show or set the contract ceiling
Forward a signal message to trade it."""

SESSION_POSITION = "position"


def normalize_ticker(raw: str) -> str:
    ticker = raw.strip().lstrip("#").upper()
    if not ticker:
        raise ValueError("Ticker required")
    if not ticker.endswith("_USDT"):
        ticker = f"{ticker}_USDT"
    return ticker


def parse_price(raw: str, label: str = "Price") -> float:
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{label} must be a number, got '{raw}'")
    if value <= 0:
        raise ValueError(f"{label} must be greater than 0")
    return value


def parse_leverage(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Leverage must be a whole number, got '{raw}'")
    if not 1 <= value <= MAX_MANUAL_LEVERAGE:
        raise ValueError(f"Leverage must be between 1 and {MAX_MANUAL_LEVERAGE}")
    return value


def parse_side(raw: str) -> str:
    side = raw.strip().lower()
    if side in ("long", "l", "buy"):
        return LONG
    if side in ("short", "s", "sell"):
        return SHORT
    raise ValueError(f"Side must be long or short, got '{raw}'")


# /setacc field aliases -> Account attribute
ACCOUNT_FIELDS = {
    "max": "max_position_usd",
    "levmin": "leverage_min",
    "levmax": "leverage_max",
    "name": "name",
    "token": "auth_token",
    "proxy": "proxy_url",
}

SETTING_TYPES = {f.name: f.type for f in fields(GlobalSettings)}

ORDERS_PER_ACCOUNT = 5


def parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("on", "true", "yes", "1"):
        return True
    if value in ("off", "false", "no", "0"):
        return False
    raise ValueError(f"Expected on or off, got '{raw}'")


def parse_setting(key: str, raw: str):
    """Convert raw text to the type of the named GlobalSettings field."""
    kind = SETTING_TYPES.get(key)
    if kind is None:
        raise ValueError(f"Unknown setting '{key}'. Send /settings for the list.")
    if kind is bool:
        return parse_bool(raw)
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(f"{key} must be {'a whole number' if kind is int else 'a number'}")


def parse_account_field(alias: str, raw: str) -> tuple:
    name = ACCOUNT_FIELDS.get(alias.lower())
    if name is None:
        raise ValueError(f"Field must be one of: {', '.join(ACCOUNT_FIELDS)}")
    if name == "max_position_usd":
        return name, parse_price(raw, "Max position")
    if name in ("leverage_min", "leverage_max"):
        return name, parse_leverage(raw)
    if name == "proxy_url" and raw == "-":
        return name, None
    return name, raw


def describe_order(order) -> str:
    direction = "LONG" if order.side in (OPEN_LONG, CLOSE_LONG) else "SHORT"
    action = "open" if order.side in (OPEN_LONG, OPEN_SHORT) else "close"
    return (f"{order.symbol} {direction} {action} vol {order.volume:g} "
            f"@ {order.price} (#{order.order_id})")


class CommandHandler:
    """Parse commands from the authorized user and dispatch them to the engine."""

    def __init__(self, engine, sessions, authorized_user_id: int = TELEGRAM_USER_ID):
        self.engine = engine
        self.config_store = engine.config_store
        self.sessions = sessions
        self.authorized_user_id = authorized_user_id
        self.commands = {
            "/s": self._cmd_short,
            "/l": self._cmd_long,
            "/cl": self._cmd_close,
            "/tp": self._cmd_tp,
            "/sl": self._cmd_sl,
            "/tpsl": self._cmd_tpsl,
            "/closeall": self._cmd_close_all,
            "/cancel": self._cmd_cancel,
            "/cancelorder": self._cmd_cancel_order,
            "/balance": self._cmd_balance,
            "/positions": self._cmd_positions,
            "/orders": self._cmd_orders,
            "/accounts": self._cmd_accounts,
            "/addacc": self._cmd_add_account,
            "/delacc": self._cmd_delete_account,
            "/master": self._cmd_master,
            "/toggle": self._cmd_toggle,
            "/setacc": self._cmd_set_account,
            "/settings": self._cmd_settings,
            "/set": self._cmd_set,
            "/limit": self._cmd_limit,
            "/help": self._cmd_help,
            "/start": self._cmd_help,
        }

    def handle(self, user_id: int, text: str) -> Optional[str]:
        """Reply text for a message, or None when there is nothing to say."""
        if self.authorized_user_id and user_id != self.authorized_user_id:
            logger.warning(f"Ignoring message from unauthorized user {user_id}")
            return None
        text = (text or "").strip()
        if not text:
            return None

        if not text.startswith("/"):
            report = self.engine.handle_signal_text(text)
            return format_batch_report(report) if report else None

        parts = text.split()
        name = parts[0].split("@", 1)[0].lower()
        handler = self.commands.get(name)
        if handler is None:
            return f"Unknown command {name}. Send /help for the list."

        try:
            return handler(user_id, parts[1:])
        except ValueError as e:
            return f"Error: {e}"
        except Exception as e:
            logger.exception(f"Command {name} failed")
            return f"Command failed: {e}"

    # --- Trading ---

    def _open(self, user_id: int, side: str, args: list) -> str:
        if len(args) != 4:
            return f"Usage: /{'l' if side == LONG else 's'} TICKER PRICE USD LEVERAGE"
        symbol = normalize_ticker(args[0])
        price = parse_price(args[1])
        notional = parse_price(args[2], "USD amount")
        leverage = parse_leverage(args[3])

        report = self.engine.open_position(
            side, symbol, price, notional, leverage,
            price_step=price_step_from_string(args[1]),
        )
        self.sessions.set(user_id, SESSION_POSITION, symbol=symbol, side=side,
                          price_step=price_step_from_string(args[1]))
        return format_batch_report(report)

    def _cmd_short(self, user_id: int, args: list) -> str:
        return self._open(user_id, SHORT, args)

    def _cmd_long(self, user_id: int, args: list) -> str:
        return self._open(user_id, LONG, args)

    def _cmd_close(self, user_id: int, args: list) -> str:
        if len(args) not in (1, 2):
            return "Usage: /cl TICKER [PRICE]"
        symbol = normalize_ticker(args[0])
        price, step = None, None
        if len(args) == 2:
            price = parse_price(args[1])
            step = price_step_from_string(args[1])
        return format_batch_report(self.engine.close_position(symbol, price, price_step=step))

    def _session_protect(self, user_id: int, args: list, kind: str) -> str:
        if len(args) != 1:
            return f"Usage: /{kind} PRICE"
        price = parse_price(args[0])
        session = self.sessions.get(user_id)
        if not session or session["state"] != SESSION_POSITION:
            return "No recent position. Use /tpsl TICKER SIDE TP SL."
        data = session["data"]
        report = self.engine.set_tp_sl(
            data["symbol"], data["side"],
            take_profit=price if kind == "tp" else None,
            stop_loss=price if kind == "sl" else None,
            price_step=price_step_from_string(args[0]),
        )
        return format_batch_report(report)

    def _cmd_tp(self, user_id: int, args: list) -> str:
        return self._session_protect(user_id, args, "tp")

    def _cmd_sl(self, user_id: int, args: list) -> str:
        return self._session_protect(user_id, args, "sl")

    def _cmd_tpsl(self, user_id: int, args: list) -> str:
        if len(args) != 4:
            return "Usage: /tpsl TICKER SIDE TP SL (use - for none)"
        symbol = normalize_ticker(args[0])
        side = parse_side(args[1])
        take_profit = None if args[2] == "-" else parse_price(args[2], "Take-profit")
        stop_loss = None if args[3] == "-" else parse_price(args[3], "Stop-loss")
        step_source = args[2] if take_profit is not None else args[3]
        report = self.engine.set_tp_sl(
            symbol, side, take_profit=take_profit, stop_loss=stop_loss,
            price_step=price_step_from_string(step_source),
        )
        return format_batch_report(report)

    def _cmd_cancel(self, user_id: int, args: list) -> str:
        if len(args) != 1:
            return "Usage: /cancel TICKER"
        return format_batch_report(self.engine.cancel_all_orders(normalize_ticker(args[0])))

    def _cmd_close_all(self, user_id: int, args: list) -> str:
        return format_batch_report(self.engine.close_all_positions())

    def _cmd_cancel_order(self, user_id: int, args: list) -> str:
        if len(args) != 3:
            return "Usage: /cancelorder ACCOUNT TICKER ORDER_ID"
        account = self._account(args[0])
        result = self.engine.cancel_order(account, normalize_ticker(args[1]), args[2])
        return format_result_line(result)

    # --- Views ---

    def _cmd_balance(self, user_id: int, args: list) -> str:
        rows = self.engine.get_balances()
        if not rows:
            return "No enabled accounts."
        lines = ["Balances:"]
        total = 0.0
        for account, balance in rows:
            if balance is None:
                lines.append(f"{account.name}: unavailable")
                continue
            total += balance.total
            lines.append(
                f"{account.name}: {balance.total:.2f} {balance.currency} "
                f"(available {balance.available:.2f}, frozen {balance.frozen:.2f})"
            )
        lines.append(f"Total: {total:.2f} USDT")
        return "\n".join(lines)

    def _cmd_positions(self, user_id: int, args: list) -> str:
        rows = self.engine.get_positions()
        if not rows:
            return "No enabled accounts."
        lines = ["Positions:"]
        for account, positions in rows:
            if positions is None:
                lines.append(f"{account.name}: unavailable")
            elif not positions:
                lines.append(f"{account.name}: none")
            else:
                for p in positions:
                    lines.append(
                        f"{account.name}: {p.symbol} {p.side.upper()} vol {p.volume:g} "
                        f"@ {p.entry_price} x{p.leverage} PnL {p.unrealized_pnl:+.2f}"
                    )
        return "\n".join(lines)

    def _cmd_orders(self, user_id: int, args: list) -> str:
        symbol = normalize_ticker(args[0]) if args else None
        rows = self.engine.get_orders(symbol)
        if not rows:
            return "No enabled accounts."
        lines = ["Open orders:"]
        for account, orders in rows:
            if orders is None:
                lines.append(f"{account.name}: unavailable")
            elif not orders:
                lines.append(f"{account.name}: none")
            else:
                for order in orders[:ORDERS_PER_ACCOUNT]:
                    lines.append(f"{account.name}: {describe_order(order)}")
                if len(orders) > ORDERS_PER_ACCOUNT:
                    lines.append(
                        f"{account.name}: ...and {len(orders) - ORDERS_PER_ACCOUNT} more"
                    )
        return "\n".join(lines)

    # --- Roster and settings ---

    def _account(self, ref: str):
        account = self.config_store.find_account(ref)
        if account is None:
            raise ValueError(f"No account '{ref}'. Send /accounts for the roster.")
        return account

    def _roster_changed(self, reply: str) -> str:
        count = self.engine.reload_clients()
        return f"{reply}\nActive clients: {count}"

    def _cmd_accounts(self, user_id: int, args: list) -> str:
        accounts = self.config_store.get_accounts()
        if not accounts:
            return "No accounts. Add one with /addacc NAME TOKEN [PROXY]."
        lines = ["Accounts:"]
        for i, acc in enumerate(accounts, 1):
            flags = []
            if acc.is_master:
                flags.append("master")
            flags.append("on" if acc.enabled else "off")
            if acc.proxy_url:
                flags.append("proxy")
            lines.append(
                f"{i}. {acc.name} [{', '.join(flags)}] max ${acc.max_position_usd:g} "
                f"lev {acc.leverage_min}-{acc.leverage_max}"
            )
        return "\n".join(lines)

    def _cmd_add_account(self, user_id: int, args: list) -> str:
        if len(args) not in (2, 3):
            return "Usage: /addacc NAME TOKEN [PROXY]"
        name, token = args[0], args[1]
        proxy = args[2] if len(args) == 3 else None
        if self.config_store.find_account(name):
            raise ValueError(f"Account '{name}' already exists")
        account = self.config_store.add_account(name, token, proxy_url=proxy)
        role = "master" if account.is_master else "slave"
        return self._roster_changed(f"Added {account.name} as {role}.")

    def _cmd_delete_account(self, user_id: int, args: list) -> str:
        if len(args) != 1:
            return "Usage: /delacc ACCOUNT"
        account = self._account(args[0])
        self.config_store.delete_account(account.id)
        reply = f"Deleted {account.name}."
        master = self.config_store.get_master_account()
        if account.is_master and master:
            reply += f" {master.name} is now master."
        return self._roster_changed(reply)

    def _cmd_master(self, user_id: int, args: list) -> str:
        if len(args) != 1:
            return "Usage: /master ACCOUNT"
        account = self._account(args[0])
        self.config_store.set_master_account(account.id)
        return self._roster_changed(f"{account.name} is now master.")

    def _cmd_toggle(self, user_id: int, args: list) -> str:
        if len(args) != 1:
            return "Usage: /toggle ACCOUNT"
        account = self._account(args[0])
        enabled = not account.enabled
        self.config_store.toggle_account(account.id, enabled)
        return self._roster_changed(f"{account.name} {'enabled' if enabled else 'disabled'}.")

    def _cmd_set_account(self, user_id: int, args: list) -> str:
        if len(args) != 3:
            return f"Usage: /setacc ACCOUNT FIELD VALUE ({', '.join(ACCOUNT_FIELDS)})"
        account = self._account(args[0])
        field_name, value = parse_account_field(args[1], args[2])
        updated = self.config_store.update_account(account.id, **{field_name: value})
        shown = "updated" if field_name in ("auth_token", "proxy_url") else value
        return self._roster_changed(f"{updated.name}: {field_name} = {shown}")

    def _cmd_settings(self, user_id: int, args: list) -> str:
        settings = self.config_store.get_settings().to_row()
        lines = ["Settings:"]
        for key, value in settings.items():
            if isinstance(value, bool):
                value = "on" if value else "off"
            lines.append(f"{key} = {value}")
        return "\n".join(lines)

    def _cmd_set(self, user_id: int, args: list) -> str:
        if len(args) != 2:
            return "Usage: /set KEY VALUE (send /settings for keys)"
        key = args[0].lower()
        value = parse_setting(key, args[1])
        self.config_store.update_settings(**{key: value})
        return f"{key} = {args[1]}"

    def _cmd_limit(self, user_id: int, args: list) -> str:
        if len(args) not in (1, 2):
            return "Usage: /limit TICKER [MAX_CONTRACTS]"
        symbol = normalize_ticker(args[0])
        if len(args) == 1:
            limit = self.config_store.get_contract_limit(symbol)
            return f"{symbol}: {limit if limit is not None else 'no limit'}"
        try:
            max_contracts = int(args[1])
        except ValueError:
            raise ValueError(f"Contract limit must be a whole number, got '{args[1]}'")
        self.config_store.set_contract_limit(symbol, max_contracts)
        return f"{symbol}: limit set to {max_contracts} contracts"

    def _cmd_help(self, user_id: int, args: list) -> str:
        return HELP_TEXT
