"""
Centralized configuration management using Pydantic Settings.
Validates environment variables on startup and provides typed config access.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field
from typing import Optional


class EmailSettings(BaseModel):
    """SMTP settings used by the request mailer"""

    host: str
    port: int
    identity: str = ""
    username: str = ""
    password: str = ""
    sender: str
    ssl: bool = False
    insecure: bool = False
    timeout_seconds: int = 5

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}".strip()


class Settings(BaseSettings):
    """
    Application settings with validation.
    Loads from environment variables with fallback to .env file.
    """

    # Database Configuration
    database_url_sqlite: str = Field(
        default="sqlite+aiosqlite:///./regflow.db",
        description="SQLite database URL for local development"
    )
    database_echo: bool = Field(
        default=False,
        description="Log all SQL queries"
    )

    # Quota Configuration
    quota_per_project_enable: bool = True
    storage_per_project: int = -1  # -1 means unlimited

    # Artifact event switches
    pull_time_update_disable: bool = False
    pull_count_update_disable: bool = False
    auto_scan_enabled: bool = True

    # SMTP Configuration
    email_host: str = "localhost"
    email_port: int = 25
    email_identity: str = ""
    email_username: str = ""
    email_password: Optional[str] = None
    email_from: str = "admin <sample_admin@mydomain.com>"
    email_ssl: bool = False
    email_insecure: bool = False
    email_timeout_seconds: int = 5

    # Job Service Configuration
    job_service_url: str = Field(
        default="http://jobservice:8080",
        description="Base URL of the durable job service"
    )
    job_service_secret: Optional[str] = None
    job_service_timeout_seconds: float = 10.0

    # Dispatcher Configuration
    dispatcher_max_concurrency: int = 64
    handler_timeout_seconds: float = 30.0
    dispatcher_shutdown_timeout_seconds: float = 10.0

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5
    circuit_breaker_timeout_duration: int = 60

    # Environment
    environment: str = "development"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def database_url(self) -> str:
        """
        Returns the SQLite database URL.
        """
        return self.database_url_sqlite

    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"

    def email(self) -> EmailSettings:
        """Resolve the SMTP settings used for request notifications"""
        return EmailSettings(
            host=self.email_host,
            port=self.email_port,
            identity=self.email_identity,
            username=self.email_username,
            password=self.email_password or "",
            sender=self.email_from,
            ssl=self.email_ssl,
            insecure=self.email_insecure,
            timeout_seconds=self.email_timeout_seconds,
        )

    def validate_critical_config(self):
        """
        Validate critical configuration on startup.
        Raises ValueError if critical config is missing.
        """
        errors = []

        if not self.database_url:
            errors.append("DATABASE_URL must be set")

        if self.dispatcher_max_concurrency <= 0:
            errors.append("DISPATCHER_MAX_CONCURRENCY must be positive")

        if not self.job_service_secret:
            import structlog
            logger = structlog.get_logger()
            logger.warning(
                "job_service_secret_not_configured",
                message="JOB_SERVICE_SECRET not set - job submissions are unauthenticated"
            )

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    def get_connection_args(self) -> dict:
        """Get SQLite-specific connection arguments"""
        return {
            "timeout": 10.0,
            "check_same_thread": False,
        }


# Global settings instance
settings = Settings()
