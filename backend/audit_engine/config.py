from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_INTEGRITY_KEY = "dev-only-audit-integrity-key"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "Contract Audit Engine"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "postgresql+asyncpg://contract_audit:contract_audit@db:5432/contract_audit"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:8000"]
    log_level: str = "INFO"

    integrity_secret_key: SecretStr = SecretStr(DEV_INTEGRITY_KEY)

    # Background write path
    audit_worker_count: int = 2
    audit_queue_maxsize: int = 10000
    audit_shutdown_timeout_seconds: float = 10.0

    version_max_attempts: int = 5
    verify_max_records: int = 1000
    redacted_fields: list[str] = ["password", "passwordHash", "password_hash", "resetToken", "reset_token"]

    # Integrity sweep worker
    integrity_sweep_interval_seconds: int = 3600
    integrity_sweep_window_hours: int = 24


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
