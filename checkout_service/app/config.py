import os

# Get settings from environment variables.
# Defaults suit a local single-node run; docker-compose overrides them.

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./checkout.db")

# --- Messaging ---
RABBITMQ_HOST = os.getenv("RABBITMQ_HOST", "rabbitmq")
EVENTS_EXCHANGE = os.getenv("EVENTS_EXCHANGE", "events")
EVENTS_ENABLED = os.getenv("EVENTS_ENABLED", "0").strip().lower() in {"1", "true", "yes"}

# --- Gateway (UPI deep link) ---
MERCHANT_UPI_ID = os.getenv("MERCHANT_UPI_ID", "cigarro@paytm")
MERCHANT_NAME = os.getenv("MERCHANT_NAME", "Cigarro")
CURRENCY = os.getenv("CURRENCY", "INR")

# --- Verification worker webhook ---
VERIFICATION_WEBHOOK_URL = os.getenv("VERIFICATION_WEBHOOK_URL", "")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "")

# --- Checkout registry ---
CHECKOUT_TTL_SECONDS = float(os.getenv("CHECKOUT_TTL_SECONDS", "3600"))
CHECKOUT_REPLAY_LIMIT = int(os.getenv("CHECKOUT_REPLAY_LIMIT", "1000"))
