import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "rewrite-proxy")

# Public-facing origin of the proxy, used to build gateway URLs
PROXY_BASE_URL = os.environ.get("PROXY_BASE_URL", "http://localhost:3000").rstrip("/")
GATEWAY_PATH = os.environ.get("GATEWAY_PATH", "/gateway")
WS_PATH = os.environ.get("WS_PATH", "/ws")
PROXY_IDENTIFIER = os.environ.get("PROXY_IDENTIFIER", "rewrite-proxy")
PROXY_TIMEOUT = int(os.environ.get("PROXY_TIMEOUT", "300"))

SESSION_FIELD_NAME = os.environ.get("SESSION_FIELD_NAME", "X-Session-ID")
SESSION_QUERY_PARAM = os.environ.get("SESSION_QUERY_PARAM", "sessionId")
MAX_SESSIONS = int(os.environ.get("MAX_SESSIONS", "1000"))
# Seconds
SESSION_TIMEOUT = int(os.environ.get("SESSION_TIMEOUT", str(24 * 60 * 60)))
SESSION_CLEANUP_INTERVAL = int(os.environ.get("SESSION_CLEANUP_INTERVAL", "3600"))
# Reserved for on-disk persistence; sessions currently live in memory only
SESSION_DIR = os.environ.get("SESSION_DIR", "")

BLOCKED_DOMAINS = [
    d.strip().lower() for d in os.environ.get("BLOCKED_DOMAINS", "").split(",") if d.strip()
]
CUSTOM_SCRIPTS = [
    s.strip() for s in os.environ.get("CUSTOM_SCRIPTS", "").split(",") if s.strip()
]
ENABLE_MINIFICATION = os.environ.get("ENABLE_MINIFICATION", "false").lower() == "true"

SECURITY_HEADERS_ENABLED = (
    os.environ.get("SECURITY_HEADERS_ENABLED", "true").lower() == "true"
)
RATE_LIMIT_ENABLED = os.environ.get("RATE_LIMIT_ENABLED", "true").lower() == "true"
RATE_LIMIT_WINDOW_MS = int(os.environ.get("RATE_LIMIT_WINDOW_MS", "60000"))
# A single proxied page fans out into many subresource requests
RATE_LIMIT_MAX_REQUESTS = int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", "600"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
