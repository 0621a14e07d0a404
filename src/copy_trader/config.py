ENGINE_ID = "copy_trader"

# Master polling
DEFAULT_POLL_INTERVAL_SECONDS = 2

# Align-triggered close: jitter window and extra close price deviation
ALIGN_CLOSE_DELAY_MIN = 5    # seconds
ALIGN_CLOSE_DELAY_MAX = 15   # seconds
ALIGN_DEVIATION_PCT = 1.2

# Pricing fallbacks when contract info is unavailable
DEFAULT_PRICE_STEP = 0.00001
DEFAULT_CONTRACT_SIZE = 1.0

# Manual command limits
MAX_MANUAL_LEVERAGE = 200

# Idle chat sessions are evicted after this long
SESSION_TTL_SECONDS = 1800
