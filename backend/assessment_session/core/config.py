from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(default="development", validation_alias="APP_ENV")

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias="REDIS_URL",
    )

    recruitment_api_base_url: str = Field(
        default="http://localhost:8000/api",
        validation_alias="RECRUITMENT_API_BASE_URL",
    )
    recruitment_api_timeout_connect: float = Field(default=3.0, validation_alias="RECRUITMENT_API_TIMEOUT_CONNECT")
    recruitment_api_timeout_read: float = Field(default=15.0, validation_alias="RECRUITMENT_API_TIMEOUT_READ")
    # Upstream expects "Authorization: Token <key>".
    recruitment_auth_scheme: str = Field(default="Token", validation_alias="RECRUITMENT_AUTH_SCHEME")

    cors_allow_origins: str = Field(default="http://localhost:3000", validation_alias="CORS_ALLOW_ORIGINS")

    # Scheduled date/time values from upstream are wall-clock times in this zone.
    assessment_timezone: str = Field(default="UTC", validation_alias="ASSESSMENT_TIMEZONE")

    tick_interval_seconds: float = Field(default=1.0, validation_alias="TICK_INTERVAL_SECONDS")
    checkpoint_interval_seconds: float = Field(default=30.0, validation_alias="CHECKPOINT_INTERVAL_SECONDS")
    checkpoint_max_age_seconds: int = Field(default=60 * 60, validation_alias="CHECKPOINT_MAX_AGE_SECONDS")

    warning_threshold_seconds: int = Field(default=60, validation_alias="WARNING_THRESHOLD_SECONDS")
    urgency_threshold_seconds: int = Field(default=120, validation_alias="URGENCY_THRESHOLD_SECONDS")
    default_pass_percentage: int = Field(default=60, validation_alias="DEFAULT_PASS_PERCENTAGE")

    # Runtimes nobody has touched for this long are closed on the next lookup.
    runtime_idle_seconds: int = Field(default=60 * 60, validation_alias="RUNTIME_IDLE_SECONDS")


settings = Settings()


def _is_prod() -> bool:
    return (settings.app_env or "").strip().lower() in {"prod", "production"}


if _is_prod():
    if settings.redis_url.strip() == "redis://localhost:6379/0":
        raise RuntimeError("REDIS_URL must be set in production")
    if settings.recruitment_api_base_url.strip() == "http://localhost:8000/api":
        raise RuntimeError("RECRUITMENT_API_BASE_URL must be set in production")
    if settings.checkpoint_interval_seconds <= 0 or settings.tick_interval_seconds <= 0:
        raise RuntimeError("timer intervals must be positive")
