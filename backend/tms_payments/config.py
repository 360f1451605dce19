"""
Application Configuration — Environment & Settings
Centralizes gateway credentials, webhook secrets and service knobs from .env
with Pydantic Settings for validation.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent

# Signing secret of the in-process demo gateway
DEMO_KEY_SECRET = "demo_secret"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "TMS Transport Fee Payments API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"   # production | development | test

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'tms_payments.db'}"

    # --- Payment Gateway (Razorpay) ---
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    CURRENCY: str = "INR"
    DEMO_MODE: bool = False

    # --- Reconciliation ---
    PENDING_EXPIRY_MINUTES: int = 24 * 60

    # --- Security ---
    CORS_ORIGINS: list[str] = ["*"]
    ORDER_RATE_LIMIT_REQUESTS: int = 10
    ORDER_RATE_LIMIT_WINDOW: int = 60

    # --- Logging ---
    LOG_DIR: str = str(BASE_DIR / "logs")
    LOG_LEVEL: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def client_signing_secret(self) -> str:
        """Secret the gateway uses to sign checkout redirects (the API key secret)."""
        if not self.RAZORPAY_KEY_SECRET and self.DEMO_MODE:
            return DEMO_KEY_SECRET
        return self.RAZORPAY_KEY_SECRET

    @property
    def webhook_signature_required(self) -> bool:
        """Signatures may only be skipped outside production with no secret configured."""
        return self.is_production or bool(self.RAZORPAY_WEBHOOK_SECRET)

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
