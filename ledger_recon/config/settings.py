"""
Configuration Management for the Ledger Reconciliation Engine

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see which knobs exist and ensures every
section is validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerServiceSettings(BaseSettings):
    """Remote ledger service connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_SERVICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    base_url: str = Field(
        default="http://localhost:8000/api",
        description="Base URL of the ledger REST API"
    )
    api_token: Optional[str] = Field(
        default=None,
        description="Bearer token issued by the authentication collaborator"
    )
    # None means no client-side timeout; the engine never retries either
    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Per-request timeout in seconds"
    )
    page_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Page size used when walking paginated listings"
    )

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so paths can be joined with a leading slash."""
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Ledger service URL must be http(s): {v}")
        return v.rstrip("/")


class EngineSettings(BaseSettings):
    """
    Reconciliation engine behaviour.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Mutation coordination
    serialize_entity_mutations: bool = Field(
        default=True,
        description="Queue mutations that touch the same entity id"
    )

    # Derived status thresholds
    near_limit_ratio: float = Field(
        default=0.9,
        gt=0.0,
        le=1.0,
        description="Spent/allocated ratio at which a budget is near its limit"
    )

    # Goal rules
    max_active_goals: int = Field(
        default=6,
        ge=1,
        description="Maximum number of active savings goals"
    )

    # Presentation helpers
    recent_transactions_limit: int = Field(
        default=5,
        ge=1,
        le=50,
        description="How many transactions the dashboard view keeps"
    )

    # Audit
    audit_history_size: int = Field(
        default=500,
        ge=10,
        description="How many audit events the in-memory trail retains"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def ledger_service(self) -> LedgerServiceSettings:
        return LedgerServiceSettings()

    @property
    def engine(self) -> EngineSettings:
        return EngineSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus
    `<name>_error` entries describing failures. Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    try:
        _ = settings.ledger_service
        results["ledger_service"] = True
    except Exception as e:
        results["ledger_service"] = False
        results["ledger_service_error"] = str(e)

    try:
        _ = settings.engine
        results["engine"] = True
    except Exception as e:
        results["engine"] = False
        results["engine_error"] = str(e)

    return results
