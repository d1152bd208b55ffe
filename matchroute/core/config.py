from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "matchroute-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    machine_credentials_json: str | None = None
    routing_token_secret: str = "dev-routing-token-secret"
    decision_base_url: str = "http://localhost:3000/decisions"
    counterparty_directory_url: str | None = None
    counterparty_directory_timeout_seconds: float = 5.0
    counterparty_pool_json: str | None = None
    counterparty_lookup_max_attempts: int = 3
    counterparty_lookup_retry_base_seconds: float = 0.5
    counterparty_lookup_retry_max_seconds: float = 5.0
    request_type_policies_json: str | None = None
    match_weight_terms: float = 0.35
    match_weight_geo: float = 0.25
    match_weight_rating: float = 0.3
    match_weight_urgency: float = 0.1
    match_geo_scale_km: float = 50.0
    max_conflict_retries: int = 3
    decision_window_seconds: int = 24 * 3600
    reminder_after_seconds: int = 2 * 3600
    searching_stall_seconds: int = 300
    sla_sweep_interval_seconds: float = 60.0
    sla_sweep_batch_size: int = 100
    notify_channels: list[str] = ["email", "sms"]
    notify_channel_webhooks_json: str | None = None
    notify_dispatch_interval_seconds: float = 5.0
    notify_batch_size: int = 50
    notify_lease_seconds: int = 60
    notify_send_timeout_seconds: float = 10.0
    notify_max_attempts: int = 3
    notify_retry_base_seconds: float = 1.0
    notify_retry_max_seconds: float = 10.0
    notify_rate_limit_max: int = 100
    notify_rate_limit_window_seconds: float = 60.0
    circuit_failure_threshold: int = 5
    circuit_failure_window_seconds: float = 60.0
    circuit_cooldown_seconds: float = 30.0
    scheduler_enabled: bool = False
    worker_max_backoff_seconds: float = 60.0
    otel_enabled: bool = True
    otel_service_name: str = "matchroute"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="MR_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
