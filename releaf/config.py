from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEVELOPMENT_SECRET_KEY = "releaf-development-secret-key-change-me"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Service settings, read from ``RELEAF_*`` environment variables or ``.env``."""

    environment: Environment = Environment.DEVELOPMENT
    secret_key: str = Field(default=DEVELOPMENT_SECRET_KEY)
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    log_json: bool = False
    seed_demo_data: bool = True

    model_config = SettingsConfigDict(env_prefix="RELEAF_", env_file=".env", extra="ignore")

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("Secret key must be at least 32 characters long")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @model_validator(mode="after")
    def require_real_secret_in_production(self) -> "Settings":
        if self.is_production and self.secret_key == DEVELOPMENT_SECRET_KEY:
            raise ValueError("RELEAF_SECRET_KEY must be set in production")
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()
