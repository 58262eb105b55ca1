import logging
import os
import sys

# --- Storage ---
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./tickets.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

# --- Payment processor ---
PROCESSOR_WEBHOOK_SECRET = os.environ.get("PROCESSOR_WEBHOOK_SECRET", "dev_secret_change_me")
PROCESSOR_API_URL = os.environ.get("PROCESSOR_API_URL", "http://localhost:9000")
PROCESSOR_API_KEY = os.environ.get("PROCESSOR_API_KEY", "")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000")

# --- Mail (unset MAIL_API_URL -> tickets are only logged) ---
MAIL_API_URL = os.environ.get("MAIL_API_URL", "")
MAIL_API_KEY = os.environ.get("MAIL_API_KEY", "")
MAIL_FROM = os.environ.get("MAIL_FROM", "tickets@example.com")

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "dev_admin_change_me")

# --- Policy ---
MAX_QUANTITY = 10
REDEEM_RATE_CAPACITY = int(os.environ.get("REDEEM_RATE_CAPACITY", "60"))
REDEEM_RATE_WINDOW_SECONDS = int(os.environ.get("REDEEM_RATE_WINDOW_SECONDS", "60"))
IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "300"))
FULFILL_MAX_ATTEMPTS = int(os.environ.get("FULFILL_MAX_ATTEMPTS", "3"))
FULFILL_RETRY_DELAY = float(os.environ.get("FULFILL_RETRY_DELAY", "0.2"))
OUTBOX_MAX_ATTEMPTS = int(os.environ.get("OUTBOX_MAX_ATTEMPTS", "5"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def setup_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
