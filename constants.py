import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

if REDIS_PASSWORD:
    REDIS_URL = os.getenv("REDIS_URL", f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")
else:
    REDIS_URL = os.getenv("REDIS_URL", f"redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")

# Set to "false" to run with the in-process fallback only
REDIS_ENABLED = os.getenv("REDIS_ENABLED", "true").lower() != "false"

# Shared store behaviour
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", 2.0))
STORE_REPROBE_SECONDS = float(os.getenv("STORE_REPROBE_SECONDS", 5.0))

# Presence entries self-expire if the owning process dies
PRESENCE_TTL_SECONDS = int(os.getenv("PRESENCE_TTL_SECONDS", 3600))
# Live entries have their TTL re-asserted this often, well inside the TTL
PRESENCE_REFRESH_SECONDS = float(os.getenv("PRESENCE_REFRESH_SECONDS", max(1, PRESENCE_TTL_SECONDS // 3)))
# Removals waiting for the store to come back; the oldest are dropped beyond this
PRESENCE_PENDING_LIMIT = int(os.getenv("PRESENCE_PENDING_LIMIT", 10000))

# Recent message replay
RECENT_MESSAGES_SIZE = int(os.getenv("RECENT_MESSAGES_SIZE", 50))
RECENT_MESSAGES_REPLAY = int(os.getenv("RECENT_MESSAGES_REPLAY", 20))
RECENT_MESSAGES_TTL_SECONDS = int(os.getenv("RECENT_MESSAGES_TTL_SECONDS", 7 * 24 * 3600))

# Realtime rate limiting
RATE_LIMIT_MESSAGES = int(os.getenv("RATE_LIMIT_MESSAGES", 30))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", 60))

# Personal notifications
NOTIFICATIONS_PER_USER = int(os.getenv("NOTIFICATIONS_PER_USER", 100))
NOTIFICATIONS_TTL_SECONDS = int(os.getenv("NOTIFICATIONS_TTL_SECONDS", 30 * 24 * 3600))

# Server
SERVER_HOST = os.getenv("HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)
