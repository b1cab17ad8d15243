"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the sync service can start with minimal configuration:
without Supabase credentials it runs against the in-memory store, and
without an OpenAI key extraction degrades to "store raw data only".
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment selector."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Central configuration for the Execution Sync Service.

    Values are loaded from environment variables first, falling back
    to a `.env.local` file in the project root. Secrets should NEVER
    be committed; use `.env.example` as the template.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────
    environment: Environment = Environment.DEVELOPMENT

    # ── Voice Agent Platform ─────────────────────────────────────
    platform_api_url: str = Field(default="https://api.bolna.ai", description="Agent platform REST base URL")
    platform_bearer_token: str = Field(default="", description="Agent platform API bearer token")
    platform_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout for the platform API")

    # ── Extraction Backend ───────────────────────────────────────
    openai_api_key: str = Field(default="", description="OpenAI API key; empty disables AI extraction")
    openai_model: str = Field(default="gpt-4o-mini", description="Chat model used for transcript extraction")
    openai_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout for extraction calls")
    extraction_save_empty_results: bool = Field(
        default=False,
        description="Persist and deliver extraction results even when every field is 'Not Found'",
    )
    legacy_doctor_info_enabled: bool = Field(
        default=False,
        description="Use the fixed five-field doctor-info extraction for owners with no active fields",
    )

    # ── Supabase ─────────────────────────────────────────────────
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service-role key")

    # ── Google Sheets ────────────────────────────────────────────
    google_client_id: str = Field(default="", description="Google OAuth client ID")
    google_client_secret: str = Field(default="", description="Google OAuth client secret")
    token_encryption_key: str = Field(default="", description="Fernet key used to encrypt stored OAuth tokens")
    google_token_refresh_lookahead_seconds: int = Field(
        default=300, ge=0, le=3600, description="Refresh access tokens expiring within this window"
    )

    # ── Sync Limits ──────────────────────────────────────────────
    sync_page_size: int = Field(default=50, ge=1, le=500, description="Executions requested per platform page")
    backfill_batch_size: int = Field(default=5, ge=1, le=50, description="Concurrent extractions per backfill batch")
    sync_interval_seconds: float = Field(default=300.0, ge=5, description="Scheduled sync worker poll period")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def extraction_backend_enabled(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
