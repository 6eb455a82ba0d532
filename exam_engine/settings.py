from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "Exam Attempt Engine"
    env: str = "dev"
    cors_origins: str = "http://localhost:5173"
    log_level: str = "INFO"

    storage_backend: str = "inmemory"  # inmemory|mongo
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "assessment_portal"

    # Used when a start-exam request carries no tenant
    default_tenant_id: str = "tenant-demo"
    # Tenant config key; the value "false" disables exams for the tenant
    exam_enabled_config_key: str = "ExamActive"

    # Clock
    expiry_grace_seconds: int = 120
    clock_skew_tolerance_seconds: int = 5
    autosave_interval_seconds: int = 30

    # Reaper
    reaper_enabled: bool = True
    reaper_interval_seconds: int = 60

    # Checkpoints
    reject_late_checkpoints: bool = False
    checkpoint_retry_attempts: int = 1

    # Observability (OpenTelemetry)
    observability_enabled: bool = True
    otel_service_name: str = "exam-engine"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_console: bool = False
    otel_sample_rate: float = 0.1


settings = Settings()
