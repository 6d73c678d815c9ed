"""
Core configuration module for the directory synchronization engine.

Process-wide settings come from environment variables (and an optional .env
file) through Pydantic Settings. Per-provider configuration is read from the
``catalog.providers.keycloakOrg`` section of an application config mapping and
validated at load time, so credential mistakes never surface mid-sync.
"""

import json
from pathlib import Path
from typing import Annotated, Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from dirsync.core.errors import ConfigError


PROVIDERS_CONFIG_PATH = ("catalog", "providers", "keycloakOrg")

DEFAULT_REALM = "master"
DEFAULT_QUERY_SIZE = 100
DEFAULT_MAX_CONCURRENCY = 20
DEFAULT_BRIEF_REPRESENTATION = True
DEFAULT_CLIENT_ID = "admin-cli"


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    All settings can be overridden via environment variables.
    """

    # Application settings
    app_name: str = "Directory Synchronization Engine"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # API settings
    api_v1_prefix: str = "/api/v1"
    api_docs_url: str = "/api/docs"
    api_openapi_url: str = "/api/openapi.json"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Database settings
    database_url: str = "sqlite+aiosqlite:///./dirsync.db"
    database_echo: bool = False

    # Logfire settings
    logfire_token: str = ""
    logfire_service_name: str = "dirsync"
    logfire_environment: str = "development"
    logfire_send: bool = False

    # CORS settings
    cors_origins: Annotated[List[str], NoDecode] = Field(default=["*"])

    # Provider settings
    providers_config_file: Optional[str] = None
    event_topic: str = "keycloak"
    default_schedule_frequency_minutes: int = 24 * 60
    default_schedule_timeout_minutes: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from comma-separated string."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    def get_logfire_settings(self) -> Dict[str, Any]:
        """Get Logfire configuration."""
        return {
            "token": self.logfire_token or None,
            "service_name": self.logfire_service_name,
            "environment": self.logfire_environment,
            "send_to_logfire": "if-token-present" if self.logfire_send else False,
        }

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"


class ScheduleConfig(BaseModel):
    """Cadence for the recurring full synchronization of one provider."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    frequency_minutes: int = Field(default=24 * 60, gt=0)
    timeout_minutes: int = Field(default=3, gt=0)
    initial_delay_seconds: int = Field(default=0, ge=0)


class ProviderConfig(BaseModel):
    """
    Configuration of one directory provider instance.

    Credentials come in pairs: username/password for the password grant,
    clientId/clientSecret for the client credentials grant. A half-filled pair
    is rejected here; a config with no pair at all fails at authentication.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    base_url: str
    realm: str = DEFAULT_REALM
    login_realm: str = DEFAULT_REALM
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    user_query_size: int = Field(default=DEFAULT_QUERY_SIZE, gt=0)
    group_query_size: int = Field(default=DEFAULT_QUERY_SIZE, gt=0)
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, gt=0)
    brief_representation: bool = DEFAULT_BRIEF_REPRESENTATION
    schedule: Optional[ScheduleConfig] = None

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def check_credential_pairs(self) -> "ProviderConfig":
        if self.client_id and not self.client_secret:
            raise ValueError("clientSecret must be provided when clientId is defined.")
        if self.client_secret and not self.client_id:
            raise ValueError("clientId must be provided when clientSecret is defined.")
        if self.username and not self.password:
            raise ValueError("password must be provided when username is defined.")
        if self.password and not self.username:
            raise ValueError("username must be provided when password is defined.")
        return self

    @property
    def location_key(self) -> str:
        return f"keycloak-org-provider:{self.id}"


def read_provider_config(provider_id: str, data: Mapping[str, Any]) -> ProviderConfig:
    """
    Validate one provider section.

    Raises:
        ConfigError: If the section is invalid
    """
    try:
        return ProviderConfig.model_validate({**data, "id": provider_id})
    except ValidationError as e:
        messages = "; ".join(
            err["msg"].removeprefix("Value error, ") for err in e.errors()
        )
        raise ConfigError(
            f"Invalid configuration for provider {provider_id}: {messages}",
            provider=provider_id,
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


def read_provider_configs(config: Mapping[str, Any]) -> List[ProviderConfig]:
    """
    Read every provider from ``catalog.providers.keycloakOrg``.

    Args:
        config: Nested application configuration

    Returns:
        One ProviderConfig per provider id, empty if the section is missing
    """
    section: Any = config
    for key in PROVIDERS_CONFIG_PATH:
        if not isinstance(section, Mapping) or key not in section:
            return []
        section = section[key]

    if not isinstance(section, Mapping):
        raise ConfigError("catalog.providers.keycloakOrg must be a mapping of provider ids")

    return [read_provider_config(provider_id, data) for provider_id, data in section.items()]


def load_provider_configs(path: Union[str, Path]) -> List[ProviderConfig]:
    """Read provider configurations from a JSON application config file."""
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigError(f"Provider config file not found: {file_path}")

    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Provider config file is not valid JSON: {file_path}") from e

    return read_provider_configs(data)


# Create global settings instance
settings = Settings()
