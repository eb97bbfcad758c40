import os

# ----------------------------
# Config & Constants
# ----------------------------
SERVICE_NAME = "qr2buy_api"

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./qr2buy.db")

APP_ENV = os.environ.get("APP_ENV", "development").lower()
IS_PRODUCTION = APP_ENV == "production"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").lower()  # 'mock' | 'stripe'

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY") or None
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET") or None

MOCK_SECRET = os.environ.get("MOCK_SECRET") or None
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/api/stripe/webhook"
)

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "").rstrip("/") or None

ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "")

SOLD_TEXT = os.environ.get("SOLD_TEXT", "VERKAUFT!")
DEFAULT_PROMPT = os.environ.get("DEFAULT_PROMPT", "Jetzt kaufen")

SSE_KEEPALIVE_SECONDS = float(os.environ.get("SSE_KEEPALIVE_SECONDS", "15"))
SSE_RETRY_MS = 5000
WS_PING_SECONDS = float(os.environ.get("WS_PING_SECONDS", "20"))
WS_LIVENESS_SECONDS = float(os.environ.get("WS_LIVENESS_SECONDS", "45"))

CORS_ORIGINS = [
    o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",")
    if o.strip()
]

ADMIN_LIST_LIMIT = 500
