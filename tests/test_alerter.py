import unittest
from unittest.mock import patch

from src.shared.alerter import HealthTracker


class TestHealthTracker(unittest.TestCase):

    @patch("src.shared.alerter.Database")
    def setUp(self, mock_db_cls):
        self.mock_db = mock_db_cls.return_value
        self.tracker = HealthTracker("copy_trader-bot")
        self.tracker.db = self.mock_db

    def test_success_without_errors(self):
        self.tracker.add_warning("slow response")
        self.assertEqual(self.tracker.severity, "success")

    def test_single_error_is_warning(self):
        self.tracker.add_error("MEXC", "Account 2: balance unavailable")
        self.assertEqual(self.tracker.severity, "warning")

    def test_critical_keywords(self):
        self.tracker.add_error("MEXC", "All failed: no account reachable")
        self.assertEqual(self.tracker.severity, "critical")

    def test_three_errors_are_critical(self):
        for i in range(3):
            self.tracker.add_error("MEXC", f"error {i}")
        self.assertEqual(self.tracker.severity, "critical")

    @patch("src.shared.alerter.send_message")
    def test_finalize_success_sends_no_alert(self, mock_send):
        self.tracker.finalize()
        row = self.mock_db.log_health_check.call_args.args[0]
        self.assertEqual(row["status"], "success")
        self.assertIsNone(row["errors"])
        self.assertEqual(
            set(row), {"workflow", "status", "errors", "warnings", "run_duration_seconds"}
        )
        mock_send.assert_not_called()

    @patch("src.shared.alerter.send_message")
    def test_finalize_with_errors_alerts(self, mock_send):
        self.tracker.add_error("System", "boom", "Bot halted")
        self.tracker.add_warning("retrying")
        self.tracker.finalize()

        row = self.mock_db.log_health_check.call_args.args[0]
        self.assertEqual(row["status"], "warning")
        self.assertEqual(len(row["errors"]), 1)
        text = mock_send.call_args.args[0]
        self.assertIn("[ALERT] WARNING: copy_trader-bot", text)
        self.assertIn("- System: boom (Bot halted)", text)
        self.assertIn("- retrying", text)
        self.assertNotIn("Account:", text)


if __name__ == "__main__":
    unittest.main()
