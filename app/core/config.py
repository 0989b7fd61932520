from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "log_level",
        "call_records_store",
        "user_data_store",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_call_records_collection",
        "mongodb_users_collection",
        "mongodb_connect_timeout_ms",
        "mongodb_socket_timeout_ms",
        "composite_match_tolerance_minutes",
        "composite_match_min_shared_participants",
        "call_events_publisher",
        "call_events_url",
        "call_events_key",
        "call_events_timeout_seconds",
        "call_process_event_name",
        "webhook_processing_budget_seconds",
    },
)


class Settings(BaseSettings):
    app_name: str = "Sales Call Intake API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    log_level: str = "INFO"
    call_records_store: str = "mongodb"
    user_data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "sales_call_intake"
    mongodb_call_records_collection: str = "call_records"
    mongodb_users_collection: str = "users"
    mongodb_connect_timeout_ms: int = 2000
    mongodb_socket_timeout_ms: int = 3000
    composite_match_tolerance_minutes: float = 5.0
    composite_match_min_shared_participants: int = 1
    call_events_publisher: str = "memory"
    call_events_url: str = "http://localhost:8288/e"
    call_events_key: str = ""
    call_events_timeout_seconds: float = 2.0
    call_process_event_name: str = "call/process"
    webhook_processing_budget_seconds: float = 5.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @field_validator("call_records_store", "user_data_store", "call_events_publisher", mode="before")
    @classmethod
    def normalize_backend_name(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @field_validator("composite_match_tolerance_minutes", mode="before")
    @classmethod
    def normalize_composite_tolerance(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 5.0
        return parsed_value

    @field_validator("composite_match_min_shared_participants", mode="before")
    @classmethod
    def normalize_min_shared_participants(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 1
        return parsed_value

    @field_validator("call_events_timeout_seconds", mode="before")
    @classmethod
    def normalize_call_events_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 2.0
        return parsed_value

    @field_validator("webhook_processing_budget_seconds", mode="before")
    @classmethod
    def normalize_processing_budget(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 5.0
        return parsed_value

    @field_validator("mongodb_connect_timeout_ms", "mongodb_socket_timeout_ms", mode="before")
    @classmethod
    def normalize_mongodb_timeouts(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 2000
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
