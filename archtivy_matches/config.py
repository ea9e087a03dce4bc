"""
Archtivy Matches — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection, the CLI and the services always receive the same
validated instance without re-parsing the environment on every call.

Inference providers never read ``Settings`` themselves: they receive an
explicit ``ProviderConfig`` built from it, which keeps test doubles trivial.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Matches Engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Gemini multimodal inference
    # ------------------------------------------------------------------ #
    GEMINI_API_KEY: str = ""
    GEMINI_VISION_MODEL: str = "gemini-2.5-flash"
    GEMINI_EMBEDDING_MODEL: str = "models/gemini-embedding-001"

    # ------------------------------------------------------------------ #
    # Embeddings
    # ------------------------------------------------------------------ #
    EMBEDDING_DIM: int = 1536
    EMBEDDING_MAX_RETRIES: int = 2
    EMBEDDING_RETRY_BASE_SECONDS: float = 1.0
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via connector or plain asyncpg URL
    # ------------------------------------------------------------------ #
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/archtivy"
    DB_USER: str = "archtivy"
    DB_PASSWORD: str = ""
    DB_NAME: str = "archtivy"
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = False

    # ------------------------------------------------------------------ #
    # Listing store (host application internal API)
    # ------------------------------------------------------------------ #
    LISTING_API_URL: str = "http://localhost:3000/api/internal"
    LISTING_API_TOKEN: str = ""

    # ------------------------------------------------------------------ #
    # Match scoring weights
    # ------------------------------------------------------------------ #
    EMBEDDING_WEIGHT: float = 0.5
    ATTRIBUTE_WEIGHT: float = 0.3
    TAXONOMY_WEIGHT: float = 0.2

    # ------------------------------------------------------------------ #
    # Engine execution
    # ------------------------------------------------------------------ #
    MATCH_MAX_CONCURRENCY: int = 4
    MATCH_TIMEOUT_SECONDS: float = 120.0
    PIPELINE_MAX_CONCURRENCY: int = 4

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator("EMBEDDING_WEIGHT", "ATTRIBUTE_WEIGHT", "TAXONOMY_WEIGHT")
    @classmethod
    def _weight_must_be_between_0_and_1(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Weight must be between 0 and 1, got {v}")
        return v

    @field_validator("EMBEDDING_WEIGHT")
    @classmethod
    def _embedding_weight_must_be_positive(cls, v: float) -> float:
        if v <= 0.0:
            raise ValueError("EMBEDDING_WEIGHT must be positive")
        return v

    @field_validator("EMBEDDING_DIM", "MATCH_MAX_CONCURRENCY", "PIPELINE_MAX_CONCURRENCY")
    @classmethod
    def _must_be_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be >= 1, got {v}")
        return v


class ProviderConfig(BaseModel):
    """Explicit configuration handed to the inference providers."""

    model_config = ConfigDict(frozen=True)

    api_key: str = ""
    vision_model: str = "gemini-2.5-flash"
    embedding_model: str = "models/gemini-embedding-001"
    embedding_dim: int = 1536
    max_retries: int = 2
    retry_base_seconds: float = 1.0
    timeout_seconds: float = 30.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key.strip())

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderConfig":
        return cls(
            api_key=settings.GEMINI_API_KEY,
            vision_model=settings.GEMINI_VISION_MODEL,
            embedding_model=settings.GEMINI_EMBEDDING_MODEL,
            embedding_dim=settings.EMBEDDING_DIM,
            max_retries=settings.EMBEDDING_MAX_RETRIES,
            retry_base_seconds=settings.EMBEDDING_RETRY_BASE_SECONDS,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime::

        from archtivy_matches.config import get_settings
        settings = get_settings()
    """
    return Settings()
