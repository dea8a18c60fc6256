"""
Configuration management using pydantic-settings.
All settings loaded from environment variables (12-factor app).
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Xero OAuth2
    xero_client_id: str = Field(default="", description="Xero OAuth2 client ID")
    xero_client_secret: str = Field(default="", description="Xero OAuth2 client secret")
    xero_redirect_uri: str = Field(
        default="http://localhost:8000/api/v1/auth/callback",
        description="OAuth2 redirect URI",
    )
    xero_scopes: str = Field(
        default="offline_access accounting.transactions accounting.contacts",
        description="Space-separated OAuth2 scopes",
    )
    xero_api_base_url: str = Field(
        default="https://api.xero.com/api.xro/2.0", description="Accounting API base URL"
    )
    xero_identity_url: str = Field(
        default="https://identity.xero.com/connect/token", description="Token endpoint"
    )
    xero_authorize_url: str = Field(
        default="https://login.xero.com/identity/connect/authorize",
        description="Authorization endpoint",
    )
    xero_connections_url: str = Field(
        default="https://api.xero.com/connections", description="Tenant connections endpoint"
    )

    # Security
    jwt_secret: str = Field(
        default="change-this-to-a-secure-random-string-in-production",
        description="JWT signing secret",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_expiration_minutes: int = Field(default=1440, description="JWT expiration (24h)")

    # Database
    db_path: str = Field(default="./data/crm.duckdb", description="DuckDB file path")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=True, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Sync tuning
    sync_page_size: int = Field(default=1000, ge=1, le=1000, description="Xero page size")
    sync_default_max_pages: int = Field(
        default=10, ge=1, le=100, description="Pages per entity per chunk invocation"
    )
    sync_page_delay_seconds: float = Field(
        default=0.05, ge=0.0, description="Courtesy delay between pages"
    )
    xero_rate_limit_initial_delay: float = Field(
        default=3.0, ge=0.0, description="First back-off delay after HTTP 429"
    )
    xero_rate_limit_max_attempts: int = Field(
        default=5, ge=1, description="Attempts per page before giving up on HTTP 429"
    )
    token_refresh_margin_seconds: int = Field(
        default=300, ge=0, description="Refresh access tokens expiring within this window"
    )
    refresh_token_lifetime_days: int = Field(
        default=60, ge=1, description="Xero refresh token lifetime"
    )

    # OpenAI enrichment
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openai_model: str = Field(default="gpt-4.1-mini-2025-04-14", description="Chat model")
    openai_input_cost_per_1k: float = Field(default=0.00015, description="USD per 1K prompt tokens")
    openai_output_cost_per_1k: float = Field(
        default=0.0006, description="USD per 1K completion tokens"
    )
    enrichment_max_batch_size: int = Field(default=250, ge=1, description="Rows per enrichment call")
    enrichment_invoice_type: str = Field(
        default="ACCREC", description="Invoice type eligible for enrichment (empty = all)"
    )
    description_sub_batch_size: int = Field(default=5, ge=1, le=15)
    description_concurrency: int = Field(default=3, ge=1, le=8)
    description_group_delay_seconds: float = Field(default=0.5, ge=0.0)
    keyword_sub_batch_size: int = Field(default=15, ge=1, le=15)
    keyword_concurrency: int = Field(default=8, ge=1, le=8)
    keyword_group_delay_seconds: float = Field(default=0.2, ge=0.0)

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    testing: bool = Field(default=False, description="Testing mode")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @property
    def xero_scope_list(self) -> List[str]:
        return [s for s in self.xero_scopes.split() if s]


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()
