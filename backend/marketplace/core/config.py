from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import Any, ClassVar
from decimal import Decimal
import json
from pathlib import Path
import os


class Settings(BaseSettings):
    API_V1_STR: str = "/api/v1"

    # JWT configuration (provide a fallback for local development)
    SECRET_KEY: str = "fallback_secret_for_dev_only"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # Database URL
    # Use an absolute path so running the app from different directories
    # (e.g., repo root or backend/) always resolves the same DB file.
    BASE_DIR: ClassVar[Path] = Path(__file__).resolve().parents[2]
    SQLALCHEMY_DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'marketplace.db'}"

    # Redis connection URL for the realtime bus
    REDIS_URL: str = "redis://localhost:6379/0"
    WS_BUS_ENABLED: bool = False

    # CORS origins
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:8081"]
    CORS_ALLOW_ALL: bool = False

    # Payment processor (Stripe REST API)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_API_BASE: str = "https://api.stripe.com"
    STRIPE_TIMEOUT_SECONDS: float = 10.0

    # Default currency code used when a booking does not specify one
    DEFAULT_CURRENCY: str = "sgd"
    # Platform fee taken from each authorization when the caller omits one
    PLATFORM_FEE_RATE: Decimal = Decimal("0.05")

    # Identical actions re-sent within this window are treated as no-ops
    DUPLICATE_ACTION_WINDOW_SECONDS: int = 10
    # In-flight payment transitions older than this may be re-claimed
    TRANSITION_CLAIM_TTL_SECONDS: int = 120

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=os.getenv("ENV_FILE", str(Path(__file__).resolve().parents[3] / ".env")),
        case_sensitive=True,
    )

    @field_validator("CORS_ORIGINS", mode="before")
    def split_origins(cls, v: Any) -> list[str]:
        """Parse comma-separated or JSON list of origins from environment."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
            except json.JSONDecodeError:
                pass
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("STRIPE_SECRET_KEY", "STRIPE_API_BASE", "DEFAULT_CURRENCY", mode="before")
    def strip_whitespace(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("DEFAULT_CURRENCY")
    def lower_currency(cls, v: str) -> str:
        return v.lower()

    @model_validator(mode="after")
    def allow_all_if_requested(cls, values: "Settings") -> "Settings":
        if values.CORS_ALLOW_ALL:
            values.CORS_ORIGINS = ["*"]
        return values


def load_settings() -> "Settings":
    return Settings()


settings = load_settings()


def _redis_url() -> str:
    env_url = os.getenv("REDIS_URL")
    if env_url:
        return env_url
    return getattr(settings, "REDIS_URL", "redis://localhost:6379/0")


REDIS_URL = _redis_url()
