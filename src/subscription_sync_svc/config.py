import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


class Settings:
    """
    Runtime configuration read from the environment (and a local .env file).
    """

    def __init__(self) -> None:
        self.database_url: str = os.getenv("DATABASE_URL", "sqlite:///./subscription_sync.db")
        self.stripe_api_key: Optional[str] = os.getenv("STRIPE_API_KEY")
        self.stripe_endpoint_secret: Optional[str] = os.getenv("STRIPE_ENDPOINT_SECRET")
        self.stripe_max_retries: int = _env_int("STRIPE_MAX_RETRIES", 2)
        self.stripe_retry_delay: float = _env_float("STRIPE_RETRY_DELAY", 0.5)
        self.notification_service_url: Optional[str] = os.getenv("NOTIFICATION_SERVICE_URL")
        self.analytics_url: Optional[str] = os.getenv("ANALYTICS_URL")
        self.side_effect_timeout_seconds: float = _env_float("SIDE_EFFECT_TIMEOUT_SECONDS", 5.0)
        self.handler_time_budget_ms: int = _env_int("HANDLER_TIME_BUDGET_MS", 10000)
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


def get_settings() -> Settings:
    # Read per call so a rotated webhook secret is picked up without a restart.
    return Settings()
