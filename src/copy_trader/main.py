import logging
import sys
import time

from src.shared.alerter import HealthTracker
from src.shared.config import LOG_LEVEL, MEXC_TOKENS, POLL_INTERVAL_SECONDS
from src.shared.config_store import ConfigStore
from src.shared.mexc_client import ClientManager
from src.shared.notifier import get_updates, send_message
from src.copy_trader.commands import CommandHandler
from src.copy_trader.config import ENGINE_ID
from src.copy_trader.engine import CopyEngine
from src.copy_trader.sessions import SessionStore

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_services() -> tuple:
    """Create the process-wide service objects once. Returns (store, clients, engine)."""
    store = ConfigStore()
    if not store.get_accounts() and MEXC_TOKENS:
        imported = store.import_from_env_format(MEXC_TOKENS)
        logger.info(f"Imported {imported} accounts from MEXC_TOKENS")

    clients = ClientManager()
    engine = CopyEngine(store, clients, poll_interval=POLL_INTERVAL_SECONDS)
    return store, clients, engine


def _handle_update(handler: CommandHandler, update: dict) -> None:
    message = update.get("message") or {}
    text = message.get("text") or message.get("caption")
    sender = (message.get("from") or {}).get("id")
    chat_id = (message.get("chat") or {}).get("id")
    if not text or sender is None:
        return

    reply = handler.handle(sender, text)
    if reply:
        send_message(reply, chat_id=chat_id)


def run_bot():
    """Chat bot: replication watcher plus the command and signal surface."""
    tracker = HealthTracker(f"{ENGINE_ID}-bot")
    engine = None
    try:
        logger.info("=== Copy Trader: Bot ===")
        store, clients, engine = build_services()
        if engine.start() == 0:
            tracker.add_warning("No enabled accounts with clients")

        handler = CommandHandler(engine, SessionStore())
        send_message("Copy trader started. Send /help for commands.", silent=True)

        offset = None
        while True:
            for update in get_updates(offset):
                offset = update["update_id"] + 1
                try:
                    _handle_update(handler, update)
                except Exception as e:
                    tracker.add_warning(f"Update {update['update_id']} failed: {e}", "Telegram")
                    logger.exception("Failed to handle update")
            handler.sessions.purge_expired()

    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except Exception as e:
        tracker.add_error("System", str(e), "Bot halted")
        logger.exception("Fatal error in copy trader bot")
    finally:
        if engine is not None:
            engine.stop()
        tracker.finalize()


def run_watch():
    """Replication only, no chat surface."""
    tracker = HealthTracker(f"{ENGINE_ID}-watch")
    engine = None
    try:
        logger.info("=== Copy Trader: Watch ===")
        store, clients, engine = build_services()
        if store.get_master_account() is None:
            tracker.add_error("Config", "No enabled master account, cannot trade")
            return
        engine.start()
        while engine.watcher.running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except Exception as e:
        tracker.add_error("System", str(e), "Watcher halted")
        logger.exception("Fatal error in copy trader watcher")
    finally:
        if engine is not None:
            engine.stop()
        tracker.finalize()


def run_check():
    """Connectivity check: proxy IP and balance per enabled account."""
    tracker = HealthTracker(f"{ENGINE_ID}-check")
    try:
        logger.info("=== Copy Trader: Account Check ===")
        store, clients, engine = build_services()
        engine.start(watch=False)

        rows = engine.get_balances()
        if not rows:
            tracker.add_warning("No enabled accounts")
        failed = 0
        for account, balance in rows:
            client = clients.get_client(account.id)
            if client is not None:
                client.check_proxy_ip()
            if balance is None:
                failed += 1
                tracker.add_error("MEXC", f"{account.name}: balance unavailable")
            else:
                role = "master" if account.is_master else "slave"
                logger.info(
                    f"[{account.name}] ({role}) {balance.total:.2f} {balance.currency}, "
                    f"available {balance.available:.2f}"
                )
        if rows and failed == len(rows):
            tracker.add_error("MEXC", "All failed: no account reachable")
        logger.info("=== Copy Trader: Account Check Complete ===")
    except Exception as e:
        tracker.add_error("System", str(e), "Account check failed")
        logger.exception("Fatal error in copy trader check")
    finally:
        tracker.finalize()


def run():
    """Entry point with mode selection."""
    mode = sys.argv[1] if len(sys.argv) > 1 else "bot"
    modes = {
        "bot": run_bot,
        "watch": run_watch,
        "check": run_check,
    }

    if mode not in modes:
        logger.error(f"Unknown mode: {mode}. Valid: {list(modes.keys())}")
        sys.exit(1)

    modes[mode]()


if __name__ == "__main__":
    run()
