import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DATABASE_URL = os.getenv("DATABASE_URL")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "8"))

ORDER_CURRENCY = os.getenv("ORDER_CURRENCY", "inr")
# Checkout sessions cannot expire sooner than 30 minutes
ORDER_EXPIRY_MINUTES = max(int(os.getenv("ORDER_EXPIRY_MINUTES", "30")), 30)
CHECKOUT_RETURN_URL = os.getenv(
    "CHECKOUT_RETURN_URL",
    "http://localhost:3000/pay-direct/verify?orderId={order_id}",
)
RECEIPT_BASE_URL = os.getenv("RECEIPT_BASE_URL", "http://localhost:3000/receipts")

DASHBOARD_CACHE_TTL_SECONDS = int(os.getenv("DASHBOARD_CACHE_TTL_SECONDS", "120"))
STALE_ORDER_MINUTES = int(os.getenv("STALE_ORDER_MINUTES", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def webhook_secret():
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def jwt_secret():
    return os.getenv("JWT_SECRET")
