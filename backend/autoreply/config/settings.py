# /autoreply/config/settings.py

import sys
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/autoreply"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis
    redis_url: str = "redis://localhost:6379"

    # AI APIs
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-flash"
    openai_api_key: str | None = None
    openai_model: str = "gpt-3.5-turbo"

    # Generation behaviour
    ai_generation_timeout_seconds: float = 15.0
    ai_temperature: float = 0.7
    ai_stop_sequences: List[str] = Field(default=["\n\n", "Human:", "Assistant:"])
    max_customer_message_chars: int = 1000

    # WhatsApp delivery
    whatsapp_access_token: str | None = None
    whatsapp_phone_id: str | None = None
    whatsapp_api_base_url: str = "https://graph.facebook.com/v18.0"

    # Security
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_hours: int = 24
    api_key: str | None = None

    # Runtime
    settings_cache_ttl_seconds: int = 60
    duplicate_window_seconds: int = 300
    queue_workers: int = 5
    queue_reclaim_idle_ms: int = 60000
    queue_reclaim_interval_seconds: int = 30
    environment: str = "production"
    log_level: str = "INFO"
    api_version: str = "v1"

    # ---------------- Validators ---------------- #

    @field_validator("ai_stop_sequences", mode="before")
    @classmethod
    def parse_stop_sequences(cls, v):
        """Accept a comma-separated string from the environment as well as a list."""
        if isinstance(v, str):
            return [item for item in v.split(",") if item]
        return v

    @field_validator("jwt_secret_key")
    @classmethod
    def key_length_must_be_sufficient(cls, v):
        if len(v) < 32:
            raise ValueError("JWT secret key must be at least 32 characters long")
        return v

    @field_validator("ai_generation_timeout_seconds")
    @classmethod
    def timeout_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("AI_GENERATION_TIMEOUT_SECONDS must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            if not settings_obj.gemini_api_key and not settings_obj.openai_api_key:
                raise ValueError("At least one AI API key must be provided")
            for var in ["whatsapp_access_token", "whatsapp_phone_id"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
