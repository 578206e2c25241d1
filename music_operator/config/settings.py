"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="music-operator", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Health / metrics server
    host: str = Field(default="0.0.0.0", description="Health server host")
    port: int = Field(default=8081, ge=1, le=65535, description="Health server port")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    k8s_in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    watch_namespace: Optional[str] = Field(
        default=None, description="Namespace to watch (None watches all namespaces)"
    )
    k8s_connect_attempts: int = Field(default=5, ge=1, le=20, description="Connection attempts at startup")

    # Database tier
    database_engine: str = Field(default="mariadb", description="Database engine strategy (mariadb/mysql)")
    credential_password_bytes: int = Field(
        default=16, ge=8, le=64, description="Random bytes used for generated passwords"
    )

    # Reconciliation scheduling
    resync_interval: float = Field(default=30.0, ge=1, le=3600, description="Resync interval in seconds")
    not_ready_resync_interval: float = Field(
        default=5.0, ge=0.1, le=300, description="Resync interval while the app tier is not fully ready"
    )
    conflict_requeue_seconds: float = Field(default=1.0, ge=0, le=60, description="Requeue delay after a conflict")
    max_concurrent_reconciles: int = Field(default=4, ge=1, le=64, description="Reconcile worker pool size")
    debounce_seconds: float = Field(default=0.5, ge=0, le=60, description="Coalescing window for duplicate events")
    backoff_base_seconds: float = Field(default=1.0, ge=0.01, le=60, description="Initial error backoff")
    backoff_max_seconds: float = Field(default=300.0, ge=1, le=3600, description="Maximum error backoff")

    # Monitoring
    prometheus_enabled: bool = Field(default=True, description="Expose Prometheus metrics")
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @field_validator("database_engine")
    @classmethod
    def validate_database_engine(cls, v: str) -> str:
        """Validate database engine name."""
        valid_engines = ["mariadb", "mysql"]
        if v.lower() not in valid_engines:
            raise ValueError(f"Database engine must be one of {valid_engines}")
        return v.lower()

    @model_validator(mode="after")
    def validate_backoff(self) -> "Settings":
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("backoff_base_seconds must not exceed backoff_max_seconds")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
