from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    DATABASE_URL: str = "sqlite:///./smartlink.db"
    DB_POOL_PRE_PING: bool = True

    PUBLIC_BASE_URL: AnyHttpUrl | None = None
    NOT_FOUND_REDIRECT_PATH: str = "/404"

    CLICK_ID_BYTES: int = 16
    CLICK_ID_QUERY_PARAM: str = "ecid"
    CLICK_COOKIE_NAME: str = "smartlink_click_id"
    CLICK_DESTINATION_COOKIE_NAME: str = "smartlink_destination"
    CLICK_COOKIE_MAX_AGE_SECONDS: int = 60 * 60 * 24 * 7
    CLICK_COOKIE_SECRET: str = "change-me"
    CLICK_COOKIE_SECURE: bool = True

    EVENT_BUS_BACKEND: Literal["inline", "temporal"] = "inline"
    TEMPORAL_ADDRESS: str = "localhost:7233"
    TEMPORAL_NAMESPACE: str = "default"
    TEMPORAL_TASK_QUEUE: str = "smartlink-attribution"
    TEMPORAL_ACTIVITY_TIMEOUT_SECONDS: int = 600
    TEMPORAL_ACTIVITY_MAX_ATTEMPTS: int = 5

    STEP_MAX_ATTEMPTS: int = 3
    STEP_RETRY_BASE_DELAY_SECONDS: float = 1.0
    STEP_RETRY_MAX_DELAY_SECONDS: float = 30.0
    STEP_TIMEOUT_SECONDS: float = 15.0
    STEP_LEASE_SECONDS: int = 120
    RUN_SWEEP_INTERVAL_SECONDS: float = 30.0
    ALERT_MAX_ATTEMPTS: int = 1

    # Inclusive: net amounts equal to the threshold alert too.
    HIGH_VALUE_ALERT_THRESHOLD: Decimal = Decimal("50")
    ALERT_WEBHOOK_URL: AnyHttpUrl | None = None

    META_GRAPH_API_BASE_URL: str = "https://graph.facebook.com"
    META_GRAPH_API_VERSION: str = "v21.0"
    META_DEFAULT_CURRENCY: str = "USD"
    OUTBOUND_REQUEST_TIMEOUT_SECONDS: float = 10.0

    REDIS_URL: str | None = None
    COUNTER_TTL_SECONDS: int = 60 * 60 * 24 * 90

    INTERNAL_API_TOKEN: str | None = None

    @field_validator("CLICK_ID_BYTES")
    @classmethod
    def validate_click_id_entropy(cls, value: int) -> int:
        if value * 8 < 120:
            raise ValueError("CLICK_ID_BYTES must provide at least 120 bits of entropy")
        return value

    @field_validator("STEP_MAX_ATTEMPTS", "ALERT_MAX_ATTEMPTS")
    @classmethod
    def validate_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("attempt ceilings must be >= 1")
        return value

    @property
    def not_found_url(self) -> str:
        if self.PUBLIC_BASE_URL:
            return f"{str(self.PUBLIC_BASE_URL).rstrip('/')}{self.NOT_FOUND_REDIRECT_PATH}"
        return self.NOT_FOUND_REDIRECT_PATH

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
