import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env from the project root (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings:
    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./checkout.db")
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        self.jwt_secret = os.getenv("JWT_SECRET")
        self.currency = os.getenv("CHECKOUT_CURRENCY", "usd")

        self.intent_ttl_seconds = int(os.getenv("INTENT_TTL_SECONDS", "300"))
        self.lock_ttl_seconds = int(os.getenv("LOCK_TTL_SECONDS", "240"))
        self.lock_sweep_grace_seconds = int(os.getenv("LOCK_SWEEP_GRACE_SECONDS", "60"))
        self.sweep_interval_seconds = float(os.getenv("SWEEP_INTERVAL_SECONDS", "30"))

        self.platform_fee_percent = int(os.getenv("PLATFORM_FEE_PERCENT", "5"))

        self.poll_max_attempts = int(os.getenv("POLL_MAX_ATTEMPTS", "5"))
        self.poll_max_wait_seconds = float(os.getenv("POLL_MAX_WAIT_SECONDS", "8"))

        self.redis_url = os.getenv("REDIS_URL")
        self.event_publish_timeout_seconds = float(os.getenv("EVENT_PUBLISH_TIMEOUT_SECONDS", "1"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
