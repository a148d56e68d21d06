from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "rowguard"
    app_env: str = "local"
    resolver_timeout_seconds: float = 5.0
    resolver_cache_ttl_seconds: int = 300
    parallel_resolution: bool = True
    strict_resolved_keys: bool = False
    cache_max_entries: int = 4096
    field_default_mask_value: str | None = None
    audit_enabled: bool = True
    audit_buffer_size: int = 100
    audit_flush_interval_seconds: float = 5.0
    audit_async: bool = True
    audit_sample_rate: float = 1.0
    log_level: str = "INFO"
    otel_enabled: bool = False
    otel_exporter_endpoint: str | None = None
    otel_console_exporter: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ROWGUARD_",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
