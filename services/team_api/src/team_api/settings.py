from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = Field(..., validation_alias="DATABASE_URL")
    session_secret: str = Field(..., validation_alias="SESSION_SECRET")
    session_ttl_seconds: int = Field(default=1209600, validation_alias="SESSION_TTL_SECONDS")
    session_cookie_name: str = Field(default="session", validation_alias="SESSION_COOKIE_NAME")
    cookie_secure: bool = Field(default=False, validation_alias="COOKIE_SECURE")
    cookie_samesite: str = Field(default="lax", validation_alias="COOKIE_SAMESITE")
    invite_token_secret: str = Field(..., validation_alias="INVITE_TOKEN_SECRET")
    invite_ttl_seconds: int = Field(default=604800, validation_alias="INVITE_TTL_SECONDS")
    rejoin_cooldown_seconds: int = Field(default=86400, validation_alias="REJOIN_COOLDOWN_SECONDS")
    batch_invite_max: int = Field(default=100, validation_alias="BATCH_INVITE_MAX")
    payment_webhook_secret: str = Field(..., validation_alias="PAYMENT_WEBHOOK_SECRET")
    payment_clock_skew_seconds: int = Field(
        default=300, validation_alias="PAYMENT_CLOCK_SKEW_SECONDS"
    )
    email_from: str = Field(..., validation_alias="EMAIL_FROM")
    smtp_host: str = Field("", validation_alias="SMTP_HOST")
    smtp_port: int = Field(587, validation_alias="SMTP_PORT")
    smtp_user: str = Field("", validation_alias="SMTP_USER")
    smtp_password: str = Field("", validation_alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(True, validation_alias="SMTP_USE_TLS")
    app_base_url: str = Field("http://localhost:8000", validation_alias="APP_BASE_URL")

    @field_validator("session_secret", "invite_token_secret", "payment_webhook_secret")
    @classmethod
    def _secret_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("secret must not be empty")
        return value

    @field_validator("email_from")
    @classmethod
    def _email_like(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        value = value.lower()
        if value not in {"lax", "strict", "none"}:
            raise ValueError("COOKIE_SAMESITE must be one of: lax, strict, none")
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()
