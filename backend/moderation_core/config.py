import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./moderation.db"
    allowed_origins: list[str] = DEFAULT_ALLOWED_ORIGINS
    auto_create_tables: bool = False
    auto_run_migrations: bool = False

    api_host: str = "0.0.0.0"
    api_port: int = 8000

    log_level: str = "INFO"
    log_json: bool = True

    appeal_window_days: int = 30
    max_pending_appeals: int = 5
    appeal_explanation_min_length: int = 100
    appeal_explanation_max_length: int = 1000
    reporter_text_max_length: int = 1000

    case_number_prefix: str = "MC"
    case_number_max_attempts: int = 3

    default_page_size: int = 20
    max_page_size: int = 100

    notification_max_attempts: int = 3
    notification_poll_interval_seconds: float = 1.0
    notification_stale_after_seconds: int = 300

    # `allowed_origins` supports comma-separated strings or JSON lists; disable pydantic-settings JSON decoding
    # so our validator can handle both formats.
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        enable_decoding=False,
        env_ignore_empty=True,
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value):
        if value is None or value == "":
            return list(DEFAULT_ALLOWED_ORIGINS)

        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return [origin for origin in parsed if origin]
            except json.JSONDecodeError:
                pass

            parsed = [origin.strip() for origin in value.split(",")]
            return [origin for origin in parsed if origin]

        if isinstance(value, (list, tuple)):
            return [origin for origin in value if origin]

        raise ValueError("allowed_origins must be a list or comma-separated string")

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value):
        if value is None or value == "":
            return "INFO"
        return str(value).strip().upper()


settings = Settings()
