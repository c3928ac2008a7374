"""Central environment-driven settings for the payments service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "vehicle-payments"
    log_level: str = "INFO"
    postgres_dsn: str
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    otel_enabled: bool = True
    outbox_publisher_enabled: bool = True

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    gateway_timeout_seconds: float = 10.0
    currency: str = "inr"
    frontend_url: str = "http://localhost:5173"

    upi_id: str | None = None
    upi_name: str = "Vehicle Marketplace Payments"
    booking_percent: int = 5
    reference_prefix: str = "VM"

    estimated_ready_days: int = 7
    checkout_persist_attempts: int = 3
    stale_checkout_minutes: int = 30
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
