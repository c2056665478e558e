"""Configuration management using pydantic-settings."""

import warnings
from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LLMSettings(BaseSettings):
    """Completion model configuration (LiteLLM model routing)."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    default_model_name: str = Field(
        default="openai/gpt-4o-mini",
        description="Default completion model name (LiteLLM format)",
        alias="DEFAULT_MODEL_NAME",
    )
    fallback_model_name: str = Field(
        default="anthropic/claude-3-haiku",
        description="Fallback completion model name (LiteLLM format)",
        alias="FALLBACK_MODEL_NAME",
    )
    enable_fallbacks: bool = Field(
        default=True,
        description="Enable automatic fallback to secondary model on failure",
        alias="ENABLE_FALLBACKS",
    )
    temperature: float = Field(
        default=0.3,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for answers",
        alias="LLM_TEMPERATURE",
    )

    openai_api_key: Optional[str] = Field(
        default=None, description="OpenAI API key", alias="OPENAI_API_KEY"
    )
    anthropic_api_key: Optional[str] = Field(
        default=None, description="Anthropic API key", alias="ANTHROPIC_API_KEY"
    )
    azure_api_key: Optional[str] = Field(
        default=None, description="Azure OpenAI API key", alias="AZURE_API_KEY"
    )
    azure_api_base: Optional[str] = Field(
        default=None, description="Azure OpenAI endpoint URL", alias="AZURE_API_BASE"
    )

    @property
    def has_openai(self) -> bool:
        """Check if OpenAI is configured."""
        return bool(self.openai_api_key)

    @property
    def has_anthropic(self) -> bool:
        """Check if Anthropic is configured."""
        return bool(self.anthropic_api_key)

    @property
    def has_azure_openai(self) -> bool:
        """Check if Azure OpenAI is configured."""
        return bool(self.azure_api_key and self.azure_api_base)


class EmbeddingSettings(BaseSettings):
    """Query embedding configuration."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    openai_api_key: Optional[str] = Field(
        default=None, description="OpenAI API key for embeddings", alias="OPENAI_API_KEY"
    )
    openai_base_url: Optional[str] = Field(
        default=None, description="Optional OpenAI base URL", alias="OPENAI_BASE_URL"
    )
    model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model name",
        alias="EMBEDDING_MODEL",
    )
    dimension: int = Field(
        default=1024,
        gt=0,
        description="Embedding dimensionality (must match stored chunk vectors)",
        alias="EMBEDDING_DIMENSION",
    )

    @property
    def is_configured(self) -> bool:
        """Check if the embedding provider has credentials."""
        return bool(self.openai_api_key)


class RedisSettings(BaseSettings):
    """Redis configuration for the shared rate-limit store."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", case_sensitive=False)

    url: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    password: Optional[str] = Field(default=None, description="Redis password")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    socket_connect_timeout: int = Field(
        default=5, description="Socket connect timeout in seconds"
    )
    rate_limit_prefix: str = Field(
        default="ratelimit:", description="Key prefix for rate-limit entries"
    )


class QdrantSettings(BaseSettings):
    """Qdrant vector database configuration."""

    model_config = SettingsConfigDict(env_prefix="QDRANT_", case_sensitive=False)

    url: str = Field(
        default="http://localhost:6333", description="Qdrant connection URL"
    )
    api_key: Optional[str] = Field(
        default=None, description="Qdrant API key (for Qdrant Cloud)", alias="API_KEY"
    )
    timeout: int = Field(default=30, description="Request timeout in seconds")
    collection_prefix: str = Field(
        default="memos_", description="Per-identity chunk collection prefix"
    )


class RateLimitSettings(BaseSettings):
    """Per-identity admission control."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", case_sensitive=False)

    window_seconds: float = Field(default=60.0, gt=0, description="Window length in seconds")
    max_requests: int = Field(default=30, gt=0, description="Requests allowed per window")
    cleanup_batch_size: int = Field(
        default=100, gt=0, description="Maximum entries deleted per cleanup sweep"
    )
    cleanup_interval_multiplier: float = Field(
        default=5.0, gt=0, description="Cleanup interval as a multiple of the window"
    )


class RetrievalSettings(BaseSettings):
    """Context retrieval tuning."""

    model_config = SettingsConfigDict(env_prefix="RETRIEVAL_", case_sensitive=False)

    candidate_pool: int = Field(
        default=20, gt=0, description="Nearest neighbours fetched before MMR"
    )
    context_size: int = Field(default=12, gt=0, description="Contexts kept after MMR")
    mmr_lambda: float = Field(
        default=0.5, ge=0.0, le=1.0, description="MMR relevance/diversity tradeoff"
    )
    keyword_page_size: int = Field(
        default=50, gt=0, description="Chunks scanned by the keyword fallback"
    )
    keyword_top_n: int = Field(
        default=12, gt=0, description="Contexts kept by the keyword fallback"
    )
    text_match_weight: float = Field(
        default=2.0, description="Score per whole-word query match in chunk text"
    )
    term_match_weight: float = Field(
        default=1.0, description="Score per query term found in the chunk term list"
    )
    max_context_chars: int = Field(
        default=2000, gt=0, description="Chunk text is truncated to this length"
    )


class TimeoutSettings(BaseSettings):
    """Deadlines for downstream collaborators (seconds)."""

    model_config = SettingsConfigDict(env_prefix="TIMEOUT_", case_sensitive=False)

    store: float = Field(default=10.0, gt=0, description="Document store calls")
    embedding: float = Field(default=15.0, gt=0, description="Query embedding call")
    completion: float = Field(
        default=60.0, gt=0, description="Opening the completion stream and each idle gap"
    )
    cheap_call_attempts: int = Field(
        default=2, ge=1, description="Attempts for cheap calls that time out"
    )


class StreamingSettings(BaseSettings):
    """Server-sent event stream configuration."""

    model_config = SettingsConfigDict(env_prefix="STREAM_", case_sensitive=False)

    keepalive_interval: float = Field(
        default=15.0, gt=0, description="Seconds without data before a keep-alive comment"
    )


class AuthSettings(BaseSettings):
    """Caller identity extraction."""

    model_config = SettingsConfigDict(env_prefix="AUTH_", case_sensitive=False)

    identity_header: str = Field(
        default="X-User-Id", description="Header carrying the caller identity"
    )
    identity_pattern: str = Field(
        default=r"^user_[0-9a-fA-F-]{36}$",
        description="Regular expression a valid identity must match",
    )


class ServerSettings(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    host: str = Field(default="0.0.0.0", description="Server host", alias="HOST")
    port: int = Field(default=8080, description="HTTP server port", alias="PORT")
    reload: bool = Field(
        default=False, description="Enable auto-reload (development only)"
    )


class CorsSettings(BaseSettings):
    """CORS configuration."""

    model_config = SettingsConfigDict(env_prefix="CORS_", case_sensitive=False)

    # Store as strings to avoid JSON parsing issues
    origins_str: str = Field(
        default="http://localhost:5173,http://localhost:3000",
        alias="origins",
        description="Allowed CORS origins (comma-separated string)",
    )
    allow_credentials: bool = Field(
        default=True, description="Allow credentials in CORS"
    )
    allow_methods_str: str = Field(
        default="GET,POST,OPTIONS",
        alias="allow_methods",
        description="Allowed HTTP methods (comma-separated string)",
    )
    allow_headers_str: str = Field(
        default="*",
        alias="allow_headers",
        description="Allowed HTTP headers (comma-separated string)",
    )
    max_age: int = Field(
        default=3600, description="CORS preflight cache max age in seconds"
    )

    @property
    def origins(self) -> List[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.origins_str.split(",") if origin.strip()]

    @property
    def allow_methods(self) -> List[str]:
        """Get allowed HTTP methods as a list."""
        return [
            method.strip() for method in self.allow_methods_str.split(",") if method.strip()
        ]

    @property
    def allow_headers(self) -> List[str]:
        """Get allowed HTTP headers as a list."""
        return [
            header.strip() for header in self.allow_headers_str.split(",") if header.strip()
        ]


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(
        default="memo-chat", description="Application name", alias="APP_NAME"
    )
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment",
        alias="ENVIRONMENT",
    )
    debug: bool = Field(default=False, description="Enable debug mode", alias="DEBUG")
    log_level: str = Field(
        default="INFO", description="Logging level", alias="LOG_LEVEL"
    )

    # Sub-settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    qdrant: QdrantSettings = Field(default_factory=QdrantSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    cors: CorsSettings = Field(default_factory=CorsSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def parse_environment(cls, v):
        """Parse environment from string."""
        if isinstance(v, str):
            try:
                return Environment(v.lower())
            except ValueError:
                return Environment.DEVELOPMENT
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    def _has_llm_provider(self) -> bool:
        return any(
            [
                self.llm.has_openai,
                self.llm.has_anthropic,
                self.llm.has_azure_openai,
            ]
        )

    def validate_llm_configuration(self) -> None:
        """Warn when no completion provider is configured."""
        if not self._has_llm_provider():
            warnings.warn(
                "No completion provider is configured. Set OPENAI_API_KEY, "
                "ANTHROPIC_API_KEY, or AZURE_API_KEY/AZURE_API_BASE.",
                UserWarning,
            )

    def validate_production_settings(self) -> None:
        """Validate that production settings are secure."""
        if not self.is_production:
            return
        if self.debug:
            raise ValueError("DEBUG must be False in production")
        if not self._has_llm_provider():
            raise ValueError(
                "At least one completion provider must be configured in production."
            )
        if not self.embedding.is_configured:
            warnings.warn(
                "OPENAI_API_KEY is not set; retrieval will always use keyword search.",
                UserWarning,
            )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_llm_configuration()
        try:
            _settings.validate_production_settings()
        except ValueError as e:
            import logging

            logging.error(f"Configuration validation failed: {e}")
            if _settings.is_production:
                raise  # Fail fast in production
    return _settings
