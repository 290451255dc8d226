# =============================================================================
# HyperWa -- Constants
# =============================================================================

from enum import IntEnum


class DisconnectReason(IntEnum):
    """Status codes reported when the service closes a session."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


# -- Reconnection -------------------------------------------------------------

MAX_RETRIES = 5
RECONNECT_BASE_DELAY = 1.0  # seconds, doubled per attempt
RECONNECT_MAX_DELAY = 30.0

# -- Protocol ------------------------------------------------------------------

DEFAULT_VERSION = (2, 3000, 1023223821)
DEFAULT_URL = "wss://web.whatsapp.com/ws/chat"
DEFAULT_VERSION_URL = (
    "https://raw.githubusercontent.com/WhiskeySockets/Baileys/master/src/Defaults/baileys-version.json"
)
BROWSER = ("HyperWa", "Chrome", "3.0.0")

# Close codes in [4000, 5000) carry a protocol status as ``code - 4000``
CLOSE_STATUS_BASE = 4000

# -- Timing (seconds) --------------------------------------------------------

CONNECTION_TIMEOUT = 20.0
QUERY_TIMEOUT = 60.0
VERSION_FETCH_TIMEOUT = 10.0

# -- Caches --------------------------------------------------------------------

MSG_RETRY_CACHE_SIZE = 1000
MSG_RETRY_CACHE_TTL = 600.0
MSG_MAX_RETRIES = 5
KEY_CACHE_TTL = 300.0
STORE_MESSAGES_PER_CHAT = 500

# -- Storage -------------------------------------------------------------------

AUTH_DIR = "auth_info"
DATABASE_PATH = "hyperwa.db"

# -- Wire prefixes -------------------------------------------------------------

PREFIX_MSGPACK = b"M:"
MAX_MESSAGE_SIZE = 4 * 1_048_576  # 4 MB
