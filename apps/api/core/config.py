"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
Coach pipeline components never read `settings` directly; they receive an
immutable `CoachConfig` built from it at startup.
"""
from dataclasses import dataclass
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins over the POSTGRES_* parts when set.
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="coach")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Coach provider (Azure OpenAI compatible chat completions)
    COACH_PROVIDER_ENDPOINT: Optional[str] = Field(default=None)
    COACH_PROVIDER_API_KEY: Optional[str] = Field(default=None)
    COACH_PROVIDER_DEPLOYMENT: str = Field(default="gpt-5-mini")
    COACH_PROVIDER_API_VERSION: str = Field(default="2024-12-01-preview")

    # Coach timeouts (seconds)
    COACH_CONNECT_TIMEOUT_S: float = Field(default=10.0, gt=0)
    # Max silence between upstream reads before the stream is failed.
    COACH_STALL_TIMEOUT_S: float = Field(default=30.0, gt=0)
    # Wall-clock cap for one streaming request, end to end.
    COACH_REQUEST_TIMEOUT_S: float = Field(default=120.0, gt=0)
    COACH_HEARTBEAT_INTERVAL_S: float = Field(default=15.0, gt=0)

    # Coach context shaping
    # Estimated tokens for the whole upstream prompt, system prompt included.
    COACH_CONTEXT_BUDGET: int = Field(default=4000, ge=256)
    COACH_HISTORY_LIMIT: int = Field(default=40, ge=0)
    COACH_METRICS_WINDOW_DAYS: int = Field(default=28, ge=1)
    COACH_MAX_INPUT_LENGTH: int = Field(default=4000, ge=1)

    # Generation
    # gpt-5-mini only supports temperature=1
    COACH_MAX_OUTPUT_TOKENS: int = Field(default=2048, ge=1)
    COACH_TEMPERATURE: float = Field(default=1.0)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    API_RELOAD: bool = Field(default=False)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )


@dataclass(frozen=True)
class CoachConfig:
    """
    Immutable coach pipeline configuration.

    Built once per process and handed to each component's constructor so
    tests can run the pipeline against fake providers with their own values.
    """
    provider_endpoint: Optional[str] = None
    provider_api_key: Optional[str] = None
    provider_deployment: str = "gpt-5-mini"
    provider_api_version: str = "2024-12-01-preview"
    connect_timeout_s: float = 10.0
    stall_timeout_s: float = 30.0
    request_timeout_s: float = 120.0
    heartbeat_interval_s: float = 15.0
    context_budget: int = 4000
    history_limit: int = 40
    metrics_window_days: int = 28
    max_input_length: int = 4000
    max_output_tokens: int = 2048
    temperature: float = 1.0

    @classmethod
    def from_settings(cls, s: Settings) -> "CoachConfig":
        return cls(
            provider_endpoint=s.COACH_PROVIDER_ENDPOINT,
            provider_api_key=s.COACH_PROVIDER_API_KEY,
            provider_deployment=s.COACH_PROVIDER_DEPLOYMENT,
            provider_api_version=s.COACH_PROVIDER_API_VERSION,
            connect_timeout_s=s.COACH_CONNECT_TIMEOUT_S,
            stall_timeout_s=s.COACH_STALL_TIMEOUT_S,
            request_timeout_s=s.COACH_REQUEST_TIMEOUT_S,
            heartbeat_interval_s=s.COACH_HEARTBEAT_INTERVAL_S,
            context_budget=s.COACH_CONTEXT_BUDGET,
            history_limit=s.COACH_HISTORY_LIMIT,
            metrics_window_days=s.COACH_METRICS_WINDOW_DAYS,
            max_input_length=s.COACH_MAX_INPUT_LENGTH,
            max_output_tokens=s.COACH_MAX_OUTPUT_TOKENS,
            temperature=s.COACH_TEMPERATURE,
        )

    @property
    def completions_url(self) -> str:
        """Azure OpenAI chat-completions URL for the configured deployment."""
        endpoint = (self.provider_endpoint or "").rstrip("/")
        return (
            f"{endpoint}/openai/deployments/{self.provider_deployment}"
            f"/chat/completions?api-version={self.provider_api_version}"
        )

    def missing(self) -> List[str]:
        """Names of provider settings that must be set before the coach can run."""
        missing = []
        if not self.provider_endpoint:
            missing.append("COACH_PROVIDER_ENDPOINT")
        if not self.provider_api_key:
            missing.append("COACH_PROVIDER_API_KEY")
        return missing


# Global settings instance
settings = Settings()
