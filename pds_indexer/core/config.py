from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "pds-indexer"
    environment: str = "dev"
    log_level: str = "INFO"
    api_key_header: str = "X-API-Key"
    admin_api_key: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    requests_per_minute: int = 10
    scan_timeout_ms: int = 60_000
    max_records_per_pds: int = 1000
    default_backoff_hours: float = 24.0
    no_records_backoff_hours: float = 168.0
    consecutive_failure_threshold: int = 5
    pds_request_timeout_seconds: float = 15.0
    pds_page_size: int = 100
    repo_page_size: int = 1000

    relay_url: str = "https://bsky.network"
    relay_cache_ttl_seconds: int = 3600
    relay_request_timeout_seconds: float = 10.0
    relay_page_size: int = 1000
    relay_fallback_suffixes: list[str] = [".host.bsky.network", ".bsky.network", "bsky.social"]

    scan_batch_size: int = 10
    scan_concurrency: int = 4
    scheduler_interval_seconds: float = 60.0
    connectivity_refresh_interval_seconds: float = 3600.0
    max_backoff_seconds: float = 300.0

    otel_enabled: bool = True
    otel_service_name: str = "pds-indexer"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="PDSI_", extra="ignore")

    @property
    def scan_timeout_seconds(self) -> float:
        return max(1, self.scan_timeout_ms) / 1000.0

    @property
    def min_request_interval_seconds(self) -> float:
        return 60.0 / max(1, self.requests_per_minute)


@lru_cache
def get_settings() -> Settings:
    return Settings()
