from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerSettings(BaseSettings):
    """Settings for the credit report pipeline worker with validation."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Database settings
    database_url: str = Field("", description="Postgres DSN")
    database_connect_timeout_s: int = Field(10)

    # Storage settings (S3-compatible, e.g. R2 or MinIO)
    storage_endpoint_url: str = Field("")
    storage_access_key: str = Field("")
    storage_secret_key: str = Field("")
    storage_bucket_name: str = Field("credit-reports")
    storage_region: str = Field("auto")
    storage_timeout_s: int = Field(30)
    signed_url_expires_s: int = Field(600)

    # LLM settings
    openai_api_key: str = Field("")
    openai_model: str = Field("gpt-4o-mini")
    openai_timeout_s: float = Field(120.0)
    analysis_max_chars: int = Field(30000)

    # Letter generation
    letter_bureaus: str = Field("Equifax,Experian,TransUnion")

    # Worker loop
    worker_poll_interval_s: float = Field(1.0)
    worker_error_backoff_s: float = Field(2.0)

    # Stale-job watchdog
    watchdog_interval_s: int = Field(300)
    job_stale_after_s: int = Field(600)

    log_level: str = Field("INFO")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator('analysis_max_chars', 'watchdog_interval_s', 'job_stale_after_s', 'signed_url_expires_s')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator('letter_bureaus')
    @classmethod
    def validate_letter_bureaus(cls, v):
        if not [b for b in v.split(",") if b.strip()]:
            raise ValueError("LETTER_BUREAUS must name at least one bureau")
        return v

    @property
    def bureaus(self) -> List[str]:
        return [b.strip() for b in self.letter_bureaus.split(",") if b.strip()]

    def missing_required(self) -> List[str]:
        """Names of settings the worker cannot run without."""
        required = {
            "DATABASE_URL": self.database_url,
            "STORAGE_ENDPOINT_URL": self.storage_endpoint_url,
            "STORAGE_ACCESS_KEY": self.storage_access_key,
            "STORAGE_SECRET_KEY": self.storage_secret_key,
            "OPENAI_API_KEY": self.openai_api_key,
        }
        return [name for name, value in required.items() if not value]


# Global settings instance
settings = WorkerSettings()
