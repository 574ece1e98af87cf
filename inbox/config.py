import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent.parent

# Load environment variables early so defaults below can be overridden by a local `.env`.
load_dotenv()

APP_ENV = (os.getenv("APP_ENV", "development") or "development").strip().lower()
IS_PRODUCTION = APP_ENV == "production"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8080"))
BASE_URL = os.getenv("BASE_URL", f"http://localhost:{PORT}")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

# ── storage ──────────────────────────────────────────────────────
DB_PATH = os.getenv("DB_PATH") or str(ROOT_DIR / "data" / "inbox.db")
DATABASE_URL = os.getenv("DATABASE_URL")  # optional PostgreSQL URL
PG_POOL_MIN = int(os.getenv("PG_POOL_MIN", "1"))
PG_POOL_MAX = int(os.getenv("PG_POOL_MAX", "10"))
PG_CONNECT_TIMEOUT_SECONDS = float(os.getenv("PG_CONNECT_TIMEOUT_SECONDS", "10"))
# SQLite lock wait (ms); concurrent ingests rely on it instead of in-process locks.
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000"))

# ── auth ─────────────────────────────────────────────────────────
AGENT_AUTH_SECRET = os.getenv("AGENT_AUTH_SECRET", "")
JWT_ISSUER = os.getenv("JWT_ISSUER", "inbox")
ACCESS_TOKEN_TTL_SECONDS = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", str(12 * 3600)))
BOOTSTRAP_ADMIN_EMAIL = (os.getenv("BOOTSTRAP_ADMIN_EMAIL", "") or "").strip().lower()
BOOTSTRAP_ADMIN_PASSWORD = os.getenv("BOOTSTRAP_ADMIN_PASSWORD", "")
MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH", "6"))

# ── real-time ────────────────────────────────────────────────────
WS_AUTH_TIMEOUT_SECONDS = float(os.getenv("WS_AUTH_TIMEOUT_SECONDS", "10"))
WS_CLIENT_QUEUE_MAX = int(os.getenv("WS_CLIENT_QUEUE_MAX", "200"))
WS_RECONNECT_BASE_MS = int(os.getenv("WS_RECONNECT_BASE_MS", "1000"))
WS_RECONNECT_MAX_MS = int(os.getenv("WS_RECONNECT_MAX_MS", "30000"))
WS_RECONNECT_MAX_ATTEMPTS = int(os.getenv("WS_RECONNECT_MAX_ATTEMPTS", "10"))
REDIS_URL = os.getenv("REDIS_URL", "")
ENABLE_WS_PUBSUB = os.getenv("ENABLE_WS_PUBSUB", "0") == "1"
WS_PUBSUB_CHANNEL = os.getenv("WS_PUBSUB_CHANNEL", "inbox:events")

# ── channels ─────────────────────────────────────────────────────
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", "15"))
PAIRING_TIMEOUT_SECONDS = float(os.getenv("PAIRING_TIMEOUT_SECONDS", "120"))
PAIRING_POLL_BASE_SECONDS = float(os.getenv("PAIRING_POLL_BASE_SECONDS", "2"))
PAIRING_POLL_MAX_SECONDS = float(os.getenv("PAIRING_POLL_MAX_SECONDS", "10"))
PAIRING_POLL_MAX_ATTEMPTS = int(os.getenv("PAIRING_POLL_MAX_ATTEMPTS", "40"))
CHANNEL_EVENT_QUEUE_MAX = int(os.getenv("CHANNEL_EVENT_QUEUE_MAX", "1000"))

WA_GATEWAY_URL = (os.getenv("WA_GATEWAY_URL", "http://localhost:3000") or "").rstrip("/")
WA_GATEWAY_API_KEY = os.getenv("WA_GATEWAY_API_KEY", "")
WA_GATEWAY_WEBHOOK_SECRET = os.getenv("WA_GATEWAY_WEBHOOK_SECRET", "")
# Public URL of POST /webhooks/whatsapp-web, registered with each gateway session.
WA_GATEWAY_CALLBACK_URL = os.getenv("WA_GATEWAY_CALLBACK_URL", "")
WA_HTTP_TIMEOUT_SECONDS = float(os.getenv("WA_HTTP_TIMEOUT_SECONDS", "12"))

META_GRAPH_VERSION = os.getenv("META_GRAPH_VERSION", "v18.0")
META_GRAPH_URL = (os.getenv("META_GRAPH_URL", "https://graph.facebook.com") or "").rstrip("/")
META_APP_SECRET = os.getenv("META_APP_SECRET", "")
META_VERIFY_TOKEN = os.getenv("META_VERIFY_TOKEN", "")
META_HTTP_TIMEOUT_SECONDS = float(os.getenv("META_HTTP_TIMEOUT_SECONDS", "12"))

# ── generative provider ─────────────────────────────────────────
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
GEMINI_API_URL = (os.getenv("GEMINI_API_URL", "https://generativelanguage.googleapis.com/v1beta") or "").rstrip("/")
