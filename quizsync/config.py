"""Shared constants for QuizSync. All node-wide configuration lives here."""

# --- Room ---
DEFAULT_ROOM_CODE = "QUIZ123"
POINTS_PER_CORRECT_ANSWER = 10
AUTO_ADVANCE_DELAY_MS = 3000   # results screen hold before the next question
STRICT_RESET = True            # reset clears the roster, forcing a re-join

# --- Relay ---
DEFAULT_RELAY_HOST = "localhost"
DEFAULT_RELAY_PORT = 8081
RELAY_DEVICE_ID = "server"     # deviceId stamped on relay-originated envelopes
RELAY_PING_INTERVAL_MS = 10000
RELAY_PONG_TIMEOUT_MS = 5000
RELAY_MAX_MISSED_PONGS = 3     # consecutive misses before a connection is dropped

# --- Transport ---
BROADCAST_CHANNEL_NAME = "quiz-game"
BROADCAST_SOCKET_DIR = "quizsync"   # under the temp dir, one subdirectory per channel
BROADCAST_MAX_DATAGRAM = 65536
BROADCAST_BACKLOG_SIZE = 64    # datagrams held per member whose queue is full
BROADCAST_RETRY_MS = 10
SYNC_SETTLE_DELAY_MS = 500     # wait after open before asking for a snapshot
RELAY_PROBE_TIMEOUT_MS = 2000  # TCP pre-check before the first connect attempt
RELAY_OPEN_TIMEOUT_MS = 5000
RECONNECT_BASE_DELAY_MS = 5000
RECONNECT_MULTIPLIER = 1.5
RECONNECT_MAX_DELAY_MS = 30000
RECONNECT_JITTER_RATIO = 0.1   # fraction of the raw delay, must stay below 0.5
MAX_RECONNECT_ATTEMPTS = 5     # then fall back to the broadcast channel for good
MESSAGE_BUFFER_SIZE = 20       # critical envelopes kept while offline

# Link quality, from the age of the last received envelope
QUALITY_GOOD_MS = 10000
QUALITY_UNSTABLE_MS = 30000

# --- Liveness ---
HEARTBEAT_INTERVAL_MS = 5000
LIVENESS_SWEEP_INTERVAL_MS = 10000
HEARTBEAT_TIMEOUT_MS = 15000

# --- Replication ---
# A snapshot is applied only if it is newer than the last accepted one by
# more than this many milliseconds. Timestamps strictly increase on the
# authoritative node, so 0 (plain "newer") is safe and keeps rapid updates.
STALE_SNAPSHOT_MARGIN_MS = 0

# --- Local backup ---
DEFAULT_STATE_DIR = ".quizsync"
SNAPSHOT_FILE = "snapshot.json"
IDENTITY_FILE = "identity.json"
