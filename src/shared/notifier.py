import logging

import requests

from src.shared.config import TELEGRAM_API_URL, TELEGRAM_BOT_TOKEN, TELEGRAM_USER_ID

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4096


def _api_url(method: str) -> str:
    return f"{TELEGRAM_API_URL}/bot{TELEGRAM_BOT_TOKEN}/{method}"


def send_message(text: str, chat_id: int = None, silent: bool = False) -> bool:
    """Send a plain-text Telegram message (defaults to the operator's chat)."""
    if not TELEGRAM_BOT_TOKEN:
        logger.warning("Telegram bot token not configured, skipping message")
        return False

    target = chat_id or TELEGRAM_USER_ID
    if not target:
        logger.warning("No Telegram chat configured, skipping message")
        return False

    if len(text) > MAX_MESSAGE_LENGTH:
        text = text[:MAX_MESSAGE_LENGTH - 3] + "..."

    try:
        resp = requests.post(
            _api_url("sendMessage"),
            json={
                "chat_id": target,
                "text": text,
                "disable_notification": silent,
            },
            timeout=15,
        )
        resp.raise_for_status()
        return True
    except Exception as e:
        logger.error(f"Failed to send Telegram message: {e}")
        return False


def get_updates(offset: int = None, timeout: int = 30) -> list:
    """Long-poll the Bot API for new updates."""
    params = {"timeout": timeout, "allowed_updates": '["message"]'}
    if offset is not None:
        params["offset"] = offset
    try:
        resp = requests.get(_api_url("getUpdates"), params=params, timeout=timeout + 10)
        resp.raise_for_status()
        return resp.json().get("result", [])
    except requests.exceptions.Timeout:
        return []
    except Exception as e:
        logger.error(f"Failed to fetch Telegram updates: {e}")
        return []
