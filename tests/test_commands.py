import unittest
from unittest.mock import MagicMock, patch

from src.shared.config_store import ConfigStore
from src.shared.mexc_client import CLOSE_SHORT, LIMIT, OPEN_LONG
from src.shared.models import (
    LONG, SHORT, Account, AccountBalance, BatchReport, Order, TradeResult,
)
from src.copy_trader.commands import (
    HELP_TEXT, CommandHandler, describe_order, normalize_ticker, parse_leverage, parse_price,
    parse_setting,
)
from src.copy_trader.reports import format_batch_report
from src.copy_trader.sessions import SessionStore

USER = 1001


def report(title="Batch"):
    return BatchReport(
        results=[
            TradeResult(account_id="m", account_name="Master", success=True, message="ok",
                        executed_price=10.0, executed_volume=5, leverage=15, latency_ms=40),
            TradeResult(account_id="s", account_name="Slave", success=False,
                        message="volume too small", skipped=True, latency_ms=3),
        ],
        total_latency_ms=812,
        title=title,
    )


class TestArgumentParsing(unittest.TestCase):

    def test_normalize_ticker(self):
        self.assertEqual(normalize_ticker("btc"), "BTC_USDT")
        self.assertEqual(normalize_ticker("#ping_usdt"), "PING_USDT")

    def test_price_must_be_positive(self):
        with self.assertRaises(ValueError):
            parse_price("0")
        with self.assertRaises(ValueError):
            parse_price("abc")

    def test_leverage_bounds(self):
        self.assertEqual(parse_leverage("200"), 200)
        with self.assertRaises(ValueError):
            parse_leverage("0")
        with self.assertRaises(ValueError):
            parse_leverage("201")

    def test_setting_values_follow_field_type(self):
        self.assertIs(parse_setting("copy_tp_sl", "on"), True)
        self.assertIs(parse_setting("signals_enabled", "0"), False)
        self.assertEqual(parse_setting("leverage_spread", "7"), 7)
        self.assertEqual(parse_setting("signal_entry_offset_pct", "-0.25"), -0.25)
        with self.assertRaises(ValueError):
            parse_setting("leverage_spread", "7.5")


class TestCommandHandler(unittest.TestCase):

    def setUp(self):
        self.engine = MagicMock()
        self.engine.open_position.return_value = report("Open BTC_USDT LONG")
        self.engine.close_position.return_value = report("Close BTC_USDT")
        self.engine.set_tp_sl.return_value = report("TP/SL")
        self.engine.cancel_all_orders.return_value = report("Cancel")
        self.engine.handle_signal_text.return_value = None
        self.sessions = SessionStore(ttl_seconds=600)
        self.handler = CommandHandler(self.engine, self.sessions, authorized_user_id=USER)

    def test_unauthorized_user_ignored(self):
        self.assertIsNone(self.handler.handle(999, "/balance"))
        self.engine.get_balances.assert_not_called()

    def test_long_command(self):
        reply = self.handler.handle(USER, "/l btc 10.5 50 15")
        self.engine.open_position.assert_called_once_with(
            LONG, "BTC_USDT", 10.5, 50.0, 15, price_step=0.1,
        )
        self.assertIn("Open BTC_USDT LONG", reply)
        self.assertIn("Success: 1/2", reply)

    def test_short_command_records_session(self):
        self.handler.handle(USER, "/s eth 2000 100 20")
        session = self.sessions.get(USER)
        self.assertEqual(session["data"]["symbol"], "ETH_USDT")
        self.assertEqual(session["data"]["side"], SHORT)

    def test_open_validation_error(self):
        reply = self.handler.handle(USER, "/l btc 10 50 500")
        self.assertTrue(reply.startswith("Error:"))
        self.engine.open_position.assert_not_called()

    def test_open_usage(self):
        reply = self.handler.handle(USER, "/l btc 10")
        self.assertTrue(reply.startswith("Usage:"))

    def test_close_with_and_without_price(self):
        self.handler.handle(USER, "/cl btc")
        self.engine.close_position.assert_called_with("BTC_USDT", None, price_step=None)
        self.handler.handle(USER, "/cl btc 11.25")
        self.engine.close_position.assert_called_with("BTC_USDT", 11.25, price_step=0.01)

    def test_tp_uses_last_opened_position(self):
        self.handler.handle(USER, "/l btc 10.5 50 15")
        self.handler.handle(USER, "/tp 12.5")
        self.engine.set_tp_sl.assert_called_once_with(
            "BTC_USDT", LONG, take_profit=12.5, stop_loss=None, price_step=0.1,
        )

    def test_sl_without_session(self):
        reply = self.handler.handle(USER, "/sl 9")
        self.assertIn("No recent position", reply)
        self.engine.set_tp_sl.assert_not_called()

    def test_tpsl_with_dash(self):
        self.handler.handle(USER, "/tpsl ping short - 0.0123")
        self.engine.set_tp_sl.assert_called_once_with(
            "PING_USDT", SHORT, take_profit=None, stop_loss=0.0123, price_step=0.0001,
        )

    def test_engine_value_error_becomes_reply(self):
        self.engine.set_tp_sl.side_effect = ValueError("Take-profit or stop-loss price required")
        reply = self.handler.handle(USER, "/tpsl btc long - -")
        self.assertIn("Error:", reply)

    def test_cancel(self):
        self.handler.handle(USER, "/cancel btc")
        self.engine.cancel_all_orders.assert_called_once_with("BTC_USDT")

    def test_close_all(self):
        self.engine.close_all_positions.return_value = report("Close all positions")
        reply = self.handler.handle(USER, "/closeall")
        self.engine.close_all_positions.assert_called_once_with()
        self.assertIn("Close all positions", reply)

    def test_cancel_single_order(self):
        slave = Account(id="s", name="Slave", auth_token="t")
        self.engine.config_store.find_account.return_value = slave
        self.engine.cancel_order.return_value = TradeResult(
            account_id="s", account_name="Slave", success=True, message="order 9001 cancelled",
        )
        reply = self.handler.handle(USER, "/cancelorder 2 btc 9001")
        self.engine.config_store.find_account.assert_called_once_with("2")
        self.engine.cancel_order.assert_called_once_with(slave, "BTC_USDT", "9001")
        self.assertIn("OK Slave (order 9001 cancelled)", reply)

    def test_cancel_order_unknown_account(self):
        self.engine.config_store.find_account.return_value = None
        reply = self.handler.handle(USER, "/cancelorder ghost btc 9001")
        self.assertIn("No account 'ghost'", reply)
        self.engine.cancel_order.assert_not_called()

    def test_orders(self):
        master = Account(id="m", name="Master", auth_token="t", is_master=True)
        slave = Account(id="s", name="Slave", auth_token="t")
        orders = [
            Order(order_id=str(i), symbol="BTC_USDT", side=OPEN_LONG, type=LIMIT,
                  price=10.5, volume=3)
            for i in range(7)
        ]
        self.engine.get_orders.return_value = [(master, orders), (slave, None)]

        reply = self.handler.handle(USER, "/orders")
        self.engine.get_orders.assert_called_once_with(None)
        self.assertIn("Master: BTC_USDT LONG open vol 3 @ 10.5 (#0)", reply)
        self.assertNotIn("(#5)", reply)
        self.assertIn("Master: ...and 2 more", reply)
        self.assertIn("Slave: unavailable", reply)

        self.handler.handle(USER, "/orders eth")
        self.engine.get_orders.assert_called_with("ETH_USDT")

    def test_close_side_order_described(self):
        order = Order(order_id="77", symbol="ETH_USDT", side=CLOSE_SHORT, type=LIMIT,
                      price=2000.0, volume=1)
        self.assertEqual(describe_order(order), "ETH_USDT SHORT close vol 1 @ 2000.0 (#77)")

    def test_balance(self):
        master = Account(id="m", name="Master", auth_token="t", is_master=True)
        slave = Account(id="s", name="Slave", auth_token="t")
        self.engine.get_balances.return_value = [
            (master, AccountBalance(available=80.0, frozen=20.0, total=100.0)),
            (slave, None),
        ]
        reply = self.handler.handle(USER, "/balance")
        self.assertIn("Master: 100.00 USDT", reply)
        self.assertIn("Slave: unavailable", reply)
        self.assertIn("Total: 100.00 USDT", reply)

    def test_positions_empty(self):
        self.engine.get_positions.return_value = [
            (Account(id="m", name="Master", auth_token="t"), []),
        ]
        self.assertIn("Master: none", self.handler.handle(USER, "/positions"))

    def test_help_and_unknown(self):
        self.assertEqual(self.handler.handle(USER, "/help"), HELP_TEXT)
        self.assertIn("Unknown command", self.handler.handle(USER, "/frobnicate"))

    def test_plain_text_goes_to_signals(self):
        self.assertIsNone(self.handler.handle(USER, "just chatting"))
        self.engine.handle_signal_text.assert_called_once_with("just chatting")

    def test_signal_report_returned(self):
        self.engine.handle_signal_text.return_value = report("Signal BTC_USDT LONG")
        reply = self.handler.handle(USER, "LONG #BTC_USDT ...")
        self.assertIn("Signal BTC_USDT LONG", reply)

    def test_unexpected_error_is_reported(self):
        self.engine.cancel_all_orders.side_effect = RuntimeError("boom")
        reply = self.handler.handle(USER, "/cancel btc")
        self.assertIn("Command failed", reply)


class TestRosterCommands(unittest.TestCase):

    @patch("src.shared.config_store.Database")
    def setUp(self, mock_db_cls):
        self.mock_db = mock_db_cls.return_value
        self.mock_db.get_accounts.return_value = [
            {"id": "m", "name": "Main", "auth_token": "tok-m", "is_master": True,
             "max_position_usd": 100, "leverage_min": 10, "leverage_max": 20},
            {"id": "b", "name": "Backup", "auth_token": "tok-b",
             "proxy_url": "http://10.0.0.1:8080", "max_position_usd": 50,
             "leverage_min": 5, "leverage_max": 15},
        ]
        self.mock_db.get_settings.return_value = None
        self.mock_db.get_contract_limits.return_value = {}
        self.mock_db.insert_account.side_effect = lambda row: row
        self.mock_db.upsert_settings.side_effect = lambda row: row
        self.store = ConfigStore()

        self.engine = MagicMock()
        self.engine.config_store = self.store
        self.engine.reload_clients.return_value = 2
        self.handler = CommandHandler(self.engine, SessionStore(), authorized_user_id=USER)

    def test_accounts_listing(self):
        reply = self.handler.handle(USER, "/accounts")
        self.assertIn("1. Main [master, on] max $100 lev 10-20", reply)
        self.assertIn("2. Backup [on, proxy] max $50 lev 5-15", reply)
        self.assertNotIn("tok-", reply)

    def test_add_account(self):
        reply = self.handler.handle(USER, "/addacc Third tok-3 http://1.2.3.4:8080")
        account = self.store.find_account("third")
        self.assertEqual(account.auth_token, "tok-3")
        self.assertEqual(account.proxy_url, "http://1.2.3.4:8080")
        self.assertFalse(account.is_master)
        self.assertIn("Added Third as slave", reply)
        self.assertIn("Active clients: 2", reply)
        self.engine.reload_clients.assert_called_once_with()

    def test_add_duplicate_name_rejected(self):
        reply = self.handler.handle(USER, "/addacc backup tok-x")
        self.assertTrue(reply.startswith("Error:"))
        self.assertEqual(len(self.store.get_accounts()), 2)
        self.engine.reload_clients.assert_not_called()

    def test_delete_master_promotes_next(self):
        reply = self.handler.handle(USER, "/delacc 1")
        self.assertEqual([a.id for a in self.store.get_accounts()], ["b"])
        self.assertEqual(self.store.get_master_account().id, "b")
        self.assertIn("Deleted Main. Backup is now master.", reply)
        self.mock_db.delete_account.assert_called_once_with("m")
        self.engine.reload_clients.assert_called_once_with()

    def test_move_master(self):
        self.handler.handle(USER, "/master backup")
        self.assertEqual(self.store.get_master_account().id, "b")
        self.assertFalse(self.store.get_account("m").is_master)
        self.mock_db.set_master_account.assert_called_with("b")
        self.engine.reload_clients.assert_called_once_with()

    def test_toggle_account(self):
        reply = self.handler.handle(USER, "/toggle 2")
        self.assertEqual(reply.splitlines()[0], "Backup disabled.")
        self.assertEqual([a.id for a in self.store.get_enabled_accounts()], ["m"])
        self.mock_db.update_account.assert_called_with("b", {"enabled": False})

        self.handler.handle(USER, "/toggle 2")
        self.assertTrue(self.store.get_account("b").enabled)
        self.assertEqual(self.engine.reload_clients.call_count, 2)

    def test_unknown_account(self):
        reply = self.handler.handle(USER, "/toggle nobody")
        self.assertIn("No account 'nobody'", reply)
        self.engine.reload_clients.assert_not_called()

    def test_set_account_fields(self):
        self.handler.handle(USER, "/setacc 2 max 250")
        self.assertEqual(self.store.get_account("b").max_position_usd, 250.0)

        reply = self.handler.handle(USER, "/setacc backup token tok-new")
        self.assertEqual(self.store.get_account("b").auth_token, "tok-new")
        self.assertNotIn("tok-new", reply)
        self.mock_db.update_account.assert_called_with("b", {"auth_token": "tok-new"})

        self.handler.handle(USER, "/setacc backup proxy -")
        self.assertIsNone(self.store.get_account("b").proxy_url)
        self.assertEqual(self.engine.reload_clients.call_count, 3)

    def test_set_account_rejects_inverted_leverage(self):
        reply = self.handler.handle(USER, "/setacc 2 levmin 50")
        self.assertTrue(reply.startswith("Error:"))
        self.assertEqual(self.store.get_account("b").leverage_min, 5)

    def test_set_account_unknown_field(self):
        self.assertIn("Field must be one of", self.handler.handle(USER, "/setacc 2 colour red"))

    def test_settings_listing(self):
        reply = self.handler.handle(USER, "/settings")
        self.assertIn("copy_open_positions = on", reply)
        self.assertIn("delay_max_ms = 1000", reply)

    def test_set_typed_values(self):
        self.handler.handle(USER, "/set copy_open_positions off")
        self.handler.handle(USER, "/set signals_enabled false")
        self.handler.handle(USER, "/set delay_max_ms 2500")
        self.handler.handle(USER, "/set price_deviation_pct 2.5")

        settings = self.store.get_settings()
        self.assertFalse(settings.copy_open_positions)
        self.assertFalse(settings.signals_enabled)
        self.assertEqual(settings.delay_max_ms, 2500)
        self.assertEqual(settings.price_deviation_pct, 2.5)
        self.assertEqual(self.mock_db.upsert_settings.call_count, 4)

    def test_set_rejects_bad_input(self):
        self.assertIn("Unknown setting", self.handler.handle(USER, "/set turbo on"))
        self.assertIn("whole number", self.handler.handle(USER, "/set delay_max_ms fast"))
        self.assertIn("Expected on or off", self.handler.handle(USER, "/set copy_tp_sl maybe"))
        reply = self.handler.handle(USER, "/set delay_min_ms 5000")
        self.assertTrue(reply.startswith("Error:"))
        self.assertEqual(self.store.get_settings().delay_min_ms, 0)
        self.mock_db.upsert_settings.assert_not_called()

    def test_contract_limit(self):
        self.assertEqual(self.handler.handle(USER, "/limit xyz"), "XYZ_USDT: no limit")
        self.handler.handle(USER, "/limit xyz 300")
        self.assertEqual(self.store.get_contract_limit("XYZ_USDT"), 300)
        self.mock_db.upsert_contract_limit.assert_called_once_with("XYZ_USDT", 300)
        self.assertEqual(self.handler.handle(USER, "/limit xyz"), "XYZ_USDT: 300")
        self.assertTrue(self.handler.handle(USER, "/limit xyz many").startswith("Error:"))


class TestBatchReportFormat(unittest.TestCase):

    def test_format(self):
        text = format_batch_report(report("Open BTC_USDT LONG"))
        lines = text.splitlines()
        self.assertEqual(lines[0], "Open BTC_USDT LONG")
        self.assertEqual(lines[1], "Total: 812ms")
        self.assertEqual(lines[2], "Success: 1/2")
        self.assertIn("OK Master @ 10 vol 5 x15 40ms", text)
        self.assertIn("SKIP Slave: volume too small 3ms", text)


if __name__ == "__main__":
    unittest.main()
