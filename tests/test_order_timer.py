import unittest
from unittest.mock import MagicMock

from src.shared.models import LONG, SHORT, Account, PositionSnapshot
from src.copy_trader.order_timer import OrderTimer


class FakeTimer:
    """Stands in for threading.Timer; fire() runs the callback synchronously."""

    created = []

    def __init__(self, interval, function, args=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


class TestOrderTimer(unittest.TestCase):

    def setUp(self):
        FakeTimer.created = []
        self.timer = OrderTimer(timer_factory=FakeTimer)
        self.account = Account(id="a1", name="Slave", auth_token="t")
        self.client = MagicMock()
        self.client.close_position.return_value = {"success": True}

    def test_cancel_check_delay_in_range(self):
        delay = self.timer.schedule_cancel_check(self.account, self.client, "BTC_USDT", 60, 180)
        self.assertGreaterEqual(delay, 60)
        self.assertLessEqual(delay, 180)
        created = FakeTimer.created[0]
        self.assertTrue(created.started)
        self.assertTrue(created.daemon)
        self.assertEqual(self.timer.pending_count, 1)

    def test_cancel_check_with_position_cancels_orders(self):
        self.client.has_open_position.return_value = True
        self.timer.schedule_cancel_check(self.account, self.client, "BTC_USDT", 1, 2)
        FakeTimer.created[0].fire()
        self.client.cancel_all_orders.assert_called_once_with("BTC_USDT")
        self.client.close_position.assert_not_called()
        self.assertEqual(self.timer.pending_count, 0)

    def test_cancel_check_without_position_does_nothing(self):
        self.client.has_open_position.return_value = False
        self.timer.schedule_cancel_check(self.account, self.client, "BTC_USDT", 1, 2)
        FakeTimer.created[0].fire()
        self.client.cancel_all_orders.assert_not_called()

    def test_timer_errors_are_swallowed(self):
        self.client.has_open_position.side_effect = RuntimeError("network down")
        self.timer.schedule_cancel_check(self.account, self.client, "BTC_USDT", 1, 2)
        FakeTimer.created[0].fire()
        self.assertEqual(self.timer.pending_count, 0)

    def test_align_close_delay_window(self):
        delay = self.timer.schedule_align_close(self.account, self.client, "PING_USDT", 1.0)
        self.assertGreaterEqual(delay, 5)
        self.assertLessEqual(delay, 15)

    def test_align_close_rechecks_and_closes(self):
        self.client.get_open_positions.return_value = [
            PositionSnapshot(symbol="PING_USDT", side=SHORT, volume=40, entry_price=1.1,
                             leverage=10),
        ]
        self.timer.schedule_align_close(self.account, self.client, "PING_USDT", 1.0, 0.0001)
        FakeTimer.created[0].fire()

        self.client.get_open_positions.assert_called_once_with("PING_USDT")
        args = self.client.close_position.call_args.args
        self.assertEqual(args[0], "PING_USDT")
        self.assertEqual(args[1], SHORT)
        self.assertGreaterEqual(args[2], 1.0)
        self.assertLessEqual(args[2], 1.012)
        self.assertEqual(args[3], 40)

    def test_align_close_skips_when_position_gone(self):
        self.client.get_open_positions.return_value = []
        self.timer.schedule_align_close(self.account, self.client, "PING_USDT", 1.0)
        FakeTimer.created[0].fire()
        self.client.close_position.assert_not_called()

    def test_align_close_skips_when_fetch_fails(self):
        self.client.get_open_positions.return_value = None
        closed = self.timer.close_if_position_held(self.account, self.client, "PING_USDT", 1.0)
        self.assertEqual(closed, 0)
        self.client.close_position.assert_not_called()

    def test_align_close_counts_each_position(self):
        self.client.get_open_positions.return_value = [
            PositionSnapshot(symbol="X_USDT", side=LONG, volume=1, entry_price=1, leverage=5),
            PositionSnapshot(symbol="X_USDT", side=SHORT, volume=2, entry_price=1, leverage=5),
        ]
        self.client.close_position.side_effect = [{"success": True},
                                                  {"success": False, "message": "rejected"}]
        closed = self.timer.close_if_position_held(self.account, self.client, "X_USDT", 2.0)
        self.assertEqual(closed, 1)

    def test_shutdown_cancels_pending(self):
        self.timer.schedule_cancel_check(self.account, self.client, "A_USDT", 1, 2)
        self.timer.schedule_cancel_check(self.account, self.client, "B_USDT", 1, 2)
        self.assertEqual(self.timer.shutdown(), 2)
        self.assertTrue(all(t.cancelled for t in FakeTimer.created))
        self.assertEqual(self.timer.pending_count, 0)

    def test_no_scheduling_after_shutdown(self):
        self.timer.shutdown()
        self.timer.schedule_cancel_check(self.account, self.client, "A_USDT", 1, 2)
        self.assertEqual(FakeTimer.created, [])
        self.assertEqual(self.timer.pending_count, 0)


if __name__ == "__main__":
    unittest.main()
