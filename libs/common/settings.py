"""Application settings for the role graph generation service."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings, read from ``ROLEGRAPH_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ROLEGRAPH_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Core application settings
    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False

    # CORS - use string to avoid JSON parsing issues
    cors_origins_str: str = Field(default="http://localhost:3000,https://localhost:3000", alias="cors_origins")

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from string."""
        if not self.cors_origins_str.strip():
            return ["http://localhost:3000", "https://localhost:3000"]
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # Generation service
    generation_provider: Literal["openai", "azure"] = "openai"
    generation_api_key: str | None = None
    generation_model: str = "gpt-4o-mini"
    azure_endpoint: str | None = None
    azure_deployment: str | None = None
    azure_api_version: str = "2024-02-15-preview"
    generation_timeout_seconds: float = Field(default=60.0, gt=0)

    # Graph bounds
    max_graph_nodes: int = Field(default=150, ge=1)
    max_skills_per_parent: int = Field(default=3, ge=1)
    key_concept_limit: int = Field(default=5, ge=0)
    max_trend_nodes: int = Field(default=5, ge=0)

    # Stage snapshots (Redis)
    redis_url: str | None = None
    snapshot_ttl_seconds: int = 86400

    # Graph persistence
    graph_store_backend: Literal["memory", "firestore"] = "memory"
    firestore_project: str | None = None
    firestore_database: str = "(default)"
    firestore_collection: str = "role_graphs"
    firebase_admin_sdk_json: str | None = None
    firebase_admin_sdk_path: str | None = None

    # Broad context search
    exa_api_key: str | None = None
    exa_num_results: int = Field(default=5, ge=1, le=25)

    # Progress channel
    progress_queue_size: int = Field(default=100, ge=1)

    # Rate limiting of pipeline starts
    run_rate_limit: int = 10
    run_rate_window_seconds: int = 60

    @field_validator("azure_endpoint")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str | None:
        """Normalize the Azure endpoint so paths can be appended."""
        if v is None:
            return v
        return v.rstrip("/") or None

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
