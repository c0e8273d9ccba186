"""Shared constants for SMCP Gateway."""

SERVER_NAME = "SMCP Gateway"
SERVER_VERSION = "0.1.0"

# Network defaults
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8787

# Logging defaults
LOG_DIR = "logs"
DEFAULT_LOG_LEVEL = "INFO"

# Credential headers
AUTHORIZATION_HEADER = "authorization"
SESSION_HEADER = "mcp-session-id"
CORRELATION_HEADER = "X-Correlation-ID"

API_KEY_SCHEME = "ApiKey "
BEARER_SCHEME = "Bearer "

# Credential prefixes and random-part sizes (bytes; hex length is double)
SESSION_PREFIX = "sess"
API_KEY_PREFIX = "smcp"
SESSION_ID_BYTES = 24
API_KEY_BYTES = 32
CORRELATION_ID_BYTES = 16

# Audit retention (30 days)
AUDIT_RETENTION_SECONDS = 30 * 24 * 60 * 60
AUDIT_KEY_PREFIX = "audit"

# Request limits
MAX_REQUEST_BYTES = 1024 * 1024
ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "OPTIONS"})

# Timeouts (seconds)
STORAGE_TIMEOUT = 5.0
INSTANCE_START_TIMEOUT = 15.0
INSTANCE_STOP_TIMEOUT = 10.0
INSTANCE_LOCK_TIMEOUT = 30.0

# Tenant registry cache revalidation interval (seconds)
TENANT_CACHE_TTL = 5.0

# Rate-limit window (seconds)
RATE_WINDOW_SECONDS = 60.0
