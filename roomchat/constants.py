# =============================================================================
# roomchat -- Protocol Constants
# =============================================================================
#
# Values match the chat server's broker and REST configuration.
# =============================================================================

# -- Endpoints -----------------------------------------------------------------

DEFAULT_BASE_URL = "http://localhost:8080"
BROKER_PATH = "/chat"
SOCKJS_WEBSOCKET_SUFFIX = "/websocket"  # raw WebSocket transport of a SockJS endpoint
API_PREFIX = "/api/v1/rooms"

# -- Destinations --------------------------------------------------------------

TOPIC_PREFIX = "/topic/room/"
PUBLISH_PREFIX = "/app/sendMessage/"

# -- STOMP ---------------------------------------------------------------------

STOMP_ACCEPT_VERSION = "1.2,1.1,1.0"
STOMP_SUBPROTOCOLS = ("v12.stomp", "v11.stomp", "v10.stomp")
STOMP_CONTENT_TYPE = "application/json"
STOMP_EOL = "\n"
STOMP_NULL = "\x00"

# -- Timing (seconds) ----------------------------------------------------------

CONNECTION_TIMEOUT = 10.0
SUBSCRIBE_TIMEOUT = 5.0
HISTORY_TIMEOUT = 10.0
DISCONNECT_TIMEOUT = 2.0

# -- Heart-beats (milliseconds, STOMP convention) -----------------------------

HEARTBEAT_OUTGOING = 10_000
HEARTBEAT_INCOMING = 10_000
HEARTBEAT_GRACE_FACTOR = 2.0  # missed incoming windows tolerated before giving up

# -- Reconciliation ------------------------------------------------------------

DEDUP_TOLERANCE = 1.0  # seconds
DEDUP_WINDOW = 50      # trailing entries checked in pass-through mode

# -- History -------------------------------------------------------------------

HISTORY_PAGE_SIZE = 50

# -- Messages ------------------------------------------------------------------

MAX_MESSAGE_SIZE = 1_048_576  # 1 MB

# -- Retry ---------------------------------------------------------------------

RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 30.0
RETRY_MAX_ATTEMPTS = 5
RETRY_FACTOR = 1.5
RETRY_ABSOLUTE_CAP = 300.0  # 5 minutes

# -- WebSocket close codes -----------------------------------------------------

WS_CLOSE_NORMAL = 1000
