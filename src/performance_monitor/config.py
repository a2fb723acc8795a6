from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Runtime
    environment: str = Field("development", alias="ENVIRONMENT")
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")

    # Storage / broker
    database_url: str = Field("sqlite:///./performance_monitor.db", alias="DATABASE_URL")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")
    lock_timeout_seconds: int = Field(30, alias="LOCK_TIMEOUT_SECONDS")

    # Scheduling
    default_frequency_minutes: int = Field(15, alias="DEFAULT_FREQUENCY_MINUTES")
    collection_tick_seconds: int = Field(60, alias="COLLECTION_TICK_SECONDS")
    hung_check_interval_seconds: int = Field(300, alias="HUNG_CHECK_INTERVAL_SECONDS")
    scheduler_job_identifier: str = Field("scheduled_master_collector", alias="SCHEDULER_JOB_IDENTIFIER")
    disabled_collectors: str | None = Field(None, alias="DISABLED_COLLECTORS")  # comma list, seeded disabled
    collector_plugins: str | None = Field(None, alias="COLLECTOR_PLUGINS")  # comma list of modules exposing register(catalog)

    # Hung-run monitor
    normal_max_duration_minutes: int = Field(5, alias="NORMAL_MAX_DURATION_MINUTES")
    first_run_max_duration_minutes: int = Field(30, alias="FIRST_RUN_MAX_DURATION_MINUTES")
    terminate_hung_runs: bool = Field(True, alias="TERMINATE_HUNG_RUNS")

    # Pipeline stages
    parse_batch_size: int = Field(1000, alias="PARSE_BATCH_SIZE")
    chain_error_attribution: str = Field("trigger", alias="CHAIN_ERROR_ATTRIBUTION")  # trigger | stage
    memory_pressure_drop_ratio: float = Field(0.8, alias="MEMORY_PRESSURE_DROP_RATIO")
    blocking_alert_threshold_ms: int = Field(30000, alias="BLOCKING_ALERT_THRESHOLD_MS")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_collector_list(raw: str | None) -> set[str]:
    return {c.strip() for c in raw.split(",") if c.strip()} if raw else set()
