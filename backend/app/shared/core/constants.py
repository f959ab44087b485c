"""
Centralized Constants for the Clinic CRM backend.
All hardcoded values should be defined here for easy maintenance.
"""

# ============================================
# API TIMEOUTS (in seconds)
# ============================================
TIMEOUT_EVOLUTION_API = 30.0          # General provider call
TIMEOUT_EVOLUTION_PROBE = 8.0         # Lightweight route-discovery GET
TIMEOUT_MEDIA_HEAD = 10.0             # HEAD check on outbound media
TIMEOUT_AUTOMATION_RELAY = 15.0       # POST to the automation endpoint

# ============================================
# OUTBOUND MESSAGING LIMITS
# ============================================
SEND_RATE_LIMIT = 30                  # Sends per tenant per window
SEND_RATE_WINDOW_SECONDS = 60
MIN_PHONE_DIGITS = 7
MAX_MEDIA_SIZE_BYTES = 10 * 1024 * 1024  # 10 MiB
ALLOWED_MEDIA_PREFIXES = ("image/", "application/", "video/")
CLIENT_MESSAGE_PREFIX = "client-"

# ============================================
# WEBHOOK INGRESS
# ============================================
WEBHOOK_RATE_LIMIT = 10_000           # Requests per token per window
WEBHOOK_RATE_WINDOW_SECONDS = 60

# ============================================
# AUTOMATION RELAY RETRIES
# ============================================
RELAY_MAX_ATTEMPTS = 3
RELAY_BACKOFF_SECONDS = 0.3           # Linear: 0.3s, 0.6s, ...

# ============================================
# PROVIDER GATEWAY
# ============================================
NOT_FOUND_LOG_INTERVAL_SECONDS = 60   # One log line per (path, key) per interval

# ============================================
# CONVERSATION / CHAT LISTING
# ============================================
CONVERSATION_MAX_LIMIT = 200
CONVERSATION_DEFAULT_LIMIT = 50
CHATS_DEFAULT_LIMIT = 100
CHATS_CACHE_TTL_SECONDS = 3
CHATS_LOCAL_MIN_SCAN = 10
CHATS_LOCAL_MAX_SCAN = 500
MIN_CHAT_CONTACT_DIGITS = 7
MAX_CHAT_CONTACT_DIGITS = 15

# ============================================
# DATABASE POOL SETTINGS
# ============================================
DB_POOL_SIZE = 5
DB_MAX_OVERFLOW = 10
DB_POOL_RECYCLE = 300
