"""
EHR Sync Configuration Module

Centralized configuration management using Pydantic Settings.
Supports environment variables and .env files. Source connection variables
accept the legacy PF_ names for deployments that predate the EHR_ prefix.
"""

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from ehr_sync.constants import (
    DEFAULT_ANCHOR_TYPES,
    DEFAULT_EXPORT_RESOURCE_TYPES,
    DEFAULT_IDENTIFIER_SYSTEM,
)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class EHRSettings(BaseSettings):
    """External EHR connection and acquisition settings."""

    model_config = SettingsConfigDict(
        env_prefix="EHR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Source connection
    fhir_base_url: str = Field(
        default="",
        validation_alias=AliasChoices("EHR_FHIR_BASE_URL", "PF_FHIR_BASE_URL"),
    )
    client_id: str = Field(
        default="",
        validation_alias=AliasChoices("EHR_CLIENT_ID", "PF_CLIENT_ID"),
    )
    client_secret: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("EHR_CLIENT_SECRET", "PF_CLIENT_SECRET"),
    )
    private_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("EHR_PRIVATE_KEY", "PF_PRIVATE_KEY"),
    )
    key_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EHR_KEY_ID", "PF_KEY_ID"),
    )
    algorithm: Literal["RS384", "RS256", "ES384"] = "RS384"
    jwks_url: str | None = None
    scopes: str | None = None
    token_endpoint: str | None = None

    # Scope of the pull (Group id) and record types
    group_id: str | None = None
    resource_types: str | None = Field(
        default=None,
        validation_alias=AliasChoices("EHR_RESOURCE_TYPES", "PF_RESOURCE_TYPES"),
    )
    anchor_types: str = ",".join(DEFAULT_ANCHOR_TYPES)
    identifier_system: str = DEFAULT_IDENTIFIER_SYSTEM

    # Export polling
    poll_interval_seconds: float = 10.0
    max_poll_attempts: int = 360

    # Search safety caps
    max_group_members: int = 1000
    max_search_pages: int = 10
    max_patients: int | None = None

    request_timeout_seconds: float = 30.0

    @property
    def resource_type_list(self) -> list[str]:
        """Configured record types, or the default export list."""
        return _split_csv(self.resource_types) or list(DEFAULT_EXPORT_RESOURCE_TYPES)

    @property
    def anchor_type_list(self) -> list[str]:
        return _split_csv(self.anchor_types)

    @property
    def is_configured(self) -> bool:
        """Base URL, client id and one proof method are all present."""
        return bool(
            self.fhir_base_url
            and self.client_id
            and (self.client_secret or self.private_key)
        )

    @property
    def auth_method(self) -> str:
        return "client_secret" if self.client_secret else "private_key_jwt"


class SchedulerSettings(BaseSettings):
    """Periodic sync scheduling settings."""

    model_config = SettingsConfigDict(
        env_prefix="EHR_SYNC_",
        env_file=".env",
        extra="ignore",
    )

    enabled: bool = False
    interval_ms: int = 86_400_000  # 24 hours
    run_on_startup: bool = False


class LocalStoreSettings(BaseSettings):
    """Local clinical store settings. An empty base URL selects the in-memory store."""

    model_config = SettingsConfigDict(
        env_prefix="LOCAL_FHIR_",
        env_file=".env",
        extra="ignore",
    )

    base_url: str = ""
    access_token: SecretStr | None = None
    timeout_seconds: float = 30.0


class LoggingSettings(BaseSettings):
    """Structured logging settings."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    level: str = "INFO"
    json_output: bool = Field(default=True, validation_alias=AliasChoices("LOG_JSON", "LOG_JSON_OUTPUT"))


class ServerSettings(BaseSettings):
    """HTTP API server settings."""

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000


class Settings:
    """
    Aggregated settings container.

    Usage:
        from ehr_sync.config import get_settings
        settings = get_settings()
        print(settings.ehr.fhir_base_url)
        print(settings.scheduler.interval_ms)
    """

    def __init__(
        self,
        ehr: EHRSettings | None = None,
        scheduler: SchedulerSettings | None = None,
        store: LocalStoreSettings | None = None,
        logging: LoggingSettings | None = None,
        server: ServerSettings | None = None,
    ):
        self.ehr = ehr or EHRSettings()
        self.scheduler = scheduler or SchedulerSettings()
        self.store = store or LocalStoreSettings()
        self.logging = logging or LoggingSettings()
        self.server = server or ServerSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings
    """
    return Settings()
