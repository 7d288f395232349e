"""Central environment-driven settings for the order core.

The API process and the background workers load this once at startup. Every
knob can be overridden with an environment variable of the same name (see
`.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "shopcore"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    provider_url: str = "http://provider-sidecar:8003"
    provider_api_key: str = ""
    provider_webhook_secret: str = ""
    carrier_webhook_secret: str = ""
    default_gateway: str = "fake"
    default_location: str = "main"

    reservation_ttl_seconds: int = 1800
    sweep_interval_seconds: float = 60.0
    sweep_jitter_seconds: float = 10.0
    sweep_batch_size: int = 200
    low_stock_threshold: int = 5

    gateway_timeout_seconds: float = 10.0
    gateway_retry_attempts: int = 3
    gateway_retry_backoff_seconds: float = 0.5
    max_conflict_retries: int = 3
    webhook_claim_timeout_seconds: int = 120
    outbox_poll_seconds: float = 0.5
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
