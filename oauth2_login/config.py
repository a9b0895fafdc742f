from typing import Optional
from urllib.parse import urlparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ALLOWED_JWT_ALGORITHMS = {"HS256", "HS384", "HS512"}
# GitLab access levels: Guest=10, Reporter=20, Developer=30, Maintainer=40, Owner=50
_GITLAB_ACCESS_LEVELS = range(10, 51)
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseSettings):
    # Runtime environment
    environment: str = "development"

    # Database
    database_url: Optional[str] = None
    database_hostname: str = "localhost"
    database_port: int = 5432
    database_password: str = "password123"
    database_name: str = "oauth2_login"
    database_username: str = "postgres"

    # Access tokens handed out after a successful login
    secret_key: str = "replace-this-in-production"
    algorithm: str = "HS256"
    token_issuer: str = "oauth2-login"
    token_audience: str = "oauth2-login-api"
    access_token_expire_minutes: int = 60

    # API versioning
    api_latest_version: str = "v1"

    # Redis-backed login sessions
    redis_url: str = "redis://localhost:6379/0"
    redis_health_required: bool = True
    redis_socket_timeout_seconds: float = 2.0
    login_session_cookie_name: str = "oauth2_session"
    login_session_ttl_seconds: int = 300
    login_session_cookie_secure: bool = False

    # Observability
    log_level: str = "INFO"
    enable_optional_observability: bool = True
    metrics_enabled: bool = True
    sentry_dsn: Optional[str] = None
    sentry_environment: str = "development"
    sentry_traces_sample_rate: float = 0.0

    # OAuth providers
    oauth_public_base_url: Optional[str] = None
    oauth_http_timeout_seconds: float = 10.0
    oauth_gitlab_client_id: Optional[str] = None
    oauth_gitlab_client_secret: Optional[str] = None
    oauth_gitlab_server: str = "https://gitlab.com"
    oauth_gitlab_repository_name: Optional[str] = None
    oauth_gitlab_admin_access_level: int = 40
    oauth_github_client_id: Optional[str] = None
    oauth_github_client_secret: Optional[str] = None
    oauth_github_repository: Optional[str] = None

    # Request security controls
    trusted_hosts: list[str] = ["localhost", "127.0.0.1", "testserver"]
    security_headers_enabled: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in _ALLOWED_JWT_ALGORITHMS:
            allowed = ", ".join(sorted(_ALLOWED_JWT_ALGORITHMS))
            raise ValueError(f"ALGORITHM must be one of: {allowed}")
        return normalized

    @field_validator("oauth_gitlab_server")
    @classmethod
    def validate_oauth_gitlab_server(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("OAUTH_GITLAB_SERVER must be an absolute http/https URL")
        return value.rstrip("/")

    @field_validator("oauth_gitlab_admin_access_level")
    @classmethod
    def validate_oauth_gitlab_admin_access_level(cls, value: int) -> int:
        if value not in _GITLAB_ACCESS_LEVELS:
            raise ValueError("OAUTH_GITLAB_ADMIN_ACCESS_LEVEL must be between 10 and 50")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in _LOG_LEVELS:
            raise ValueError(f"Unknown LOG_LEVEL: {value}")
        return normalized

    @model_validator(mode="after")
    def validate_production_secret(self) -> "Settings":
        if self.environment.lower() in {"prod", "production"}:
            insecure_secrets = {
                "",
                "replace-this-in-production",
                "test-secret-key",
                "changeme",
            }
            if self.secret_key in insecure_secrets or len(self.secret_key) < 32:
                raise ValueError(
                    "SECRET_KEY must be a high-entropy value (>=32 chars) in production"
                )
        return self

    @property
    def sqlalchemy_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.database_username}:{self.database_password}"
            f"@{self.database_hostname}:{self.database_port}/{self.database_name}"
        )


settings = Settings()
