"""Ledger configuration loaded from environment variables and .env files.

Override any field with a ``LEDGER_`` prefixed variable, e.g.
``LEDGER_REFERRAL_INACTIVITY_DAYS=60``.
"""

from decimal import Decimal
from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field("referral-ledger", description="Service name reported by /health")
    environment: Environment = Field(Environment.DEVELOPMENT)

    default_currency: str = Field("USD", description="Commission currency for new referrals")
    referral_inactivity_days: int = Field(30, ge=1, description="Days without activity before a pending referral expires")
    lock_timeout_seconds: float = Field(5.0, gt=0, description="Max wait for a per-referral lock")

    milestone_bonuses: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "first_payment": Decimal("10.00"),
            "recurring_payment": Decimal("5.00"),
            "upgrade": Decimal("15.00"),
            "retention": Decimal("20.00"),
        },
        description="Bonus amount per milestone type, in the referral's currency",
    )

    log_level: LogLevel = Field(LogLevel.INFO)
    log_format: str = Field("json", description="json or console")

    @field_validator("default_currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def check_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
