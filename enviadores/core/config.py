"""
Application configuration

All tunables for the finalization workflow live here. Nothing is required:
the aggregator proxy injects its own credentials, so the package imports
and runs with an empty environment.

Components take their limits as constructor arguments that default to
these settings, so tests pass small values instead of patching globals.
"""
import logging
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # App
    APP_NAME: str = "Enviadores Finalizer"
    ENVIRONMENT: str = "production"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Carrier aggregator (Manuable, reached through our PHP proxy)
    AGGREGATOR_PROXY_URL: str = "https://enviadores.com.mx/api/manuable-proxy.php"
    AGGREGATOR_SESSION_ENDPOINT: str = "session"
    AGGREGATOR_RATES_ENDPOINT: str = "rates"
    AGGREGATOR_LABELS_ENDPOINT: str = "labels"
    AGGREGATOR_BALANCE_ENDPOINT: str = "balance"
    AGGREGATOR_EMAIL: str = ""  # Empty = proxy injects credentials
    AGGREGATOR_PASSWORD: str = ""
    AGGREGATOR_TIMEOUT_SECONDS: float = 60.0

    # Aggregator request defaults
    AGGREGATOR_COUNTRY_CODE: str = "MX"
    AGGREGATOR_CURRENCY: str = "MXN"
    AGGREGATOR_DISTANCE_UNIT: str = "CM"
    AGGREGATOR_MASS_UNIT: str = "KG"
    AGGREGATOR_PRODUCT_ID: str = "01010101"
    AGGREGATOR_DEFAULT_CONTENT: str = "GIFT"
    AGGREGATOR_LABEL_FORMAT: Literal["PDF", "THERMAL"] = "PDF"
    AGGREGATOR_DEFAULT_DIMENSION_CM: float = 10.0

    # Auto-fix placeholders for label validation errors
    PLACEHOLDER_EMAIL: str = "cliente@enviadores.com.mx"
    PLACEHOLDER_STREET_NUMBER: str = "S/N"

    # Label retrieval
    LABEL_RETRIEVAL_TIMEOUT_SECONDS: float = 30.0
    LABEL_RETRIEVAL_MAX_ATTEMPTS: int = 3
    LABEL_RETRIEVAL_BACKOFF_SECONDS: float = 2.0

    # Backend shipment API
    BACKEND_API_URL: str = "https://enviadores.com.mx/api"
    BACKEND_API_TOKEN: str = ""
    BACKEND_TIMEOUT_SECONDS: float = 30.0
    COMMIT_MAX_RETRIES: int = 3
    COMMIT_BACKOFF_BASE_MS: int = 2000
    COMMIT_IDEMPOTENCY_KEYS_ENABLED: bool = True
    AUXILIARY_MAX_RETRIES: int = 3  # destination sync

    # Auto-commit countdown
    AUTO_COMMIT_SECONDS: int = 60
    AUTO_COMMIT_TICK_SECONDS: float = 1.0

    @field_validator("AGGREGATOR_PROXY_URL", "BACKEND_API_URL", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v):
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    @model_validator(mode="after")
    def validate_limits(self):
        errors = []

        for name in (
            "AGGREGATOR_TIMEOUT_SECONDS",
            "LABEL_RETRIEVAL_TIMEOUT_SECONDS",
            "BACKEND_TIMEOUT_SECONDS",
            "AUTO_COMMIT_TICK_SECONDS",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")

        if self.LABEL_RETRIEVAL_MAX_ATTEMPTS < 1:
            errors.append("LABEL_RETRIEVAL_MAX_ATTEMPTS must be at least 1")
        if self.COMMIT_MAX_RETRIES < 0:
            errors.append("COMMIT_MAX_RETRIES cannot be negative")
        if self.AUTO_COMMIT_SECONDS < 1:
            errors.append("AUTO_COMMIT_SECONDS must be at least 1")

        if self.ENVIRONMENT == "production":
            for name in ("AGGREGATOR_PROXY_URL", "BACKEND_API_URL"):
                if not getattr(self, name).startswith("https://"):
                    errors.append(f"{name} must use HTTPS in production")

        if errors:
            raise ValueError(
                "INVALID CONFIGURATION:\n" + "\n".join(f"  - {e}" for e in errors)
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
