import os
from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Supabase
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")

# Telegram (single authorized operator)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_USER_ID = int(os.getenv("TELEGRAM_USER_ID", "0") or 0)
TELEGRAM_API_URL = "https://api.telegram.org"

# MEXC futures
MEXC_BASE_URL = os.getenv("MEXC_BASE_URL", "https://futures.mexc.com")
MEXC_TOKENS = os.getenv("MEXC_TOKENS", "")
MEXC_REQUEST_TIMEOUT = 10
PROXY_CHECK_URL = "https://api.ipify.org?format=json"

# Master polling
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "2"))

# Defaults for a freshly created account
ACCOUNT_DEFAULTS = {
    "enabled": True,
    "max_position_usd": 100.0,
    "leverage_min": 10,
    "leverage_max": 20,
}

# Global copy-trading settings; stored values are merged over these
DEFAULT_SETTINGS = {
    "delay_min_ms": 0,
    "delay_max_ms": 1000,
    "price_deviation_pct": 1.0,
    "leverage_spread": 10,
    "copy_open_positions": True,
    "copy_close_positions": True,
    "copy_tp_sl": True,
    "signals_enabled": True,
    "signal_entry_offset_pct": -0.5,
    "signal_tp_offset_pct": 1.0,
    "signal_cancel_time_min": 60,
    "signal_cancel_time_max": 180,
}

# Max contracts per symbol; stored values are merged over these
DEFAULT_CONTRACT_LIMITS = {
    "SUBHUB_USDT": 2100,
    "PING_USDT": 2900,
    "LITKEY_USDT": 200,
    "AT_USDT": 75000,
    "PLANCK_USDT": 360,
    "ARCSOL_USDT": 3700,
    "GUA_USDT": 105,
    "NB_USDT": 850,
    "BLUE_USDT": 2250,
    "TYCOON_USDT": 700,
    "POP_USDT": 500,
    "RION_USDT": 700,
    "DIGI_USDT": 3300,
    "BEST_USDT": 400,
    "ORE_USDT": 70,
    "SEEK_USDT": 360,
    "BIT_USDT": 13000,
    "ESUQIE_USDT": 120,
    "PIPE_USDT": 80,
}
