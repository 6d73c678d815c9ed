"""
Unit tests for provider configuration loading.

Tests cover:
- Defaults and camelCase aliases
- Credential pair validation at load time
- Reading the catalog.providers.keycloakOrg section from mappings and files
"""

import json

import pytest
from pydantic import ValidationError

from dirsync.core.config import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_QUERY_SIZE,
    ProviderConfig,
    Settings,
    load_provider_configs,
    read_provider_config,
    read_provider_configs,
)
from dirsync.core.errors import ConfigError


class TestProviderConfig:
    """Test validation of a single provider section."""

    def test_defaults(self):
        """Test unset options fall back to their defaults."""
        config = read_provider_config("main", {"baseUrl": "https://sso.example.com/"})

        assert config.id == "main"
        assert config.base_url == "https://sso.example.com"
        assert config.realm == "master"
        assert config.login_realm == "master"
        assert config.user_query_size == DEFAULT_QUERY_SIZE
        assert config.group_query_size == DEFAULT_QUERY_SIZE
        assert config.max_concurrency == DEFAULT_MAX_CONCURRENCY
        assert config.brief_representation is True
        assert config.schedule is None
        assert config.location_key == "keycloak-org-provider:main"

    def test_camel_case_options(self):
        """Test camelCase keys populate the snake_case fields."""
        config = read_provider_config("main", {
            "baseUrl": "https://sso.example.com",
            "loginRealm": "admins",
            "realm": "acme",
            "clientId": "sync",
            "clientSecret": "s3cret",
            "userQuerySize": 50,
            "groupQuerySize": 25,
            "maxConcurrency": 5,
            "briefRepresentation": False,
            "schedule": {"frequencyMinutes": 30, "timeoutMinutes": 5},
        })

        assert config.login_realm == "admins"
        assert config.client_id == "sync"
        assert config.user_query_size == 50
        assert config.group_query_size == 25
        assert config.max_concurrency == 5
        assert config.brief_representation is False
        assert config.schedule.frequency_minutes == 30
        assert config.schedule.timeout_minutes == 5

    @pytest.mark.parametrize("credentials,message", [
        ({"clientId": "sync"}, "clientSecret must be provided when clientId is defined."),
        ({"clientSecret": "s3cret"}, "clientId must be provided when clientSecret is defined."),
        ({"username": "admin"}, "password must be provided when username is defined."),
        ({"password": "secret"}, "username must be provided when password is defined."),
    ])
    def test_half_filled_credential_pair_is_rejected(self, credentials, message):
        """Test a credential pair with one side missing fails at load."""
        with pytest.raises(ConfigError) as exc_info:
            read_provider_config("main", {"baseUrl": "https://sso.example.com", **credentials})

        assert message in exc_info.value.message
        assert exc_info.value.provider == "main"

    def test_error_details_do_not_echo_secrets(self):
        """Test validation details leave the submitted values out."""
        with pytest.raises(ConfigError) as exc_info:
            read_provider_config("main", {"baseUrl": "https://sso.example.com", "password": "hunter2"})

        assert "hunter2" not in json.dumps(exc_info.value.to_dict(), default=str)

    def test_invalid_query_size(self):
        """Test page sizes must be positive."""
        with pytest.raises(ConfigError):
            read_provider_config("main", {"baseUrl": "https://sso.example.com", "userQuerySize": 0})

    def test_config_is_immutable(self):
        """Test a loaded config cannot be changed mid-sync."""
        config = ProviderConfig(id="main", base_url="https://sso.example.com")
        with pytest.raises(ValidationError):
            config.realm = "other"


class TestReadProviderConfigs:
    """Test reading every provider from application config."""

    def test_reads_every_provider(self):
        """Test each provider id becomes one config."""
        configs = read_provider_configs({
            "catalog": {"providers": {"keycloakOrg": {
                "default": {"baseUrl": "https://a.example.com"},
                "other": {"baseUrl": "https://b.example.com", "realm": "b"},
            }}}
        })

        assert [c.id for c in configs] == ["default", "other"]
        assert configs[1].realm == "b"

    def test_missing_section(self):
        """Test no section means no providers."""
        assert read_provider_configs({}) == []
        assert read_provider_configs({"catalog": {"providers": {}}}) == []

    def test_section_must_be_mapping(self):
        """Test a malformed section is a configuration error."""
        with pytest.raises(ConfigError):
            read_provider_configs({"catalog": {"providers": {"keycloakOrg": ["default"]}}})

    def test_load_from_file(self, tmp_path):
        """Test provider configs load from a JSON file."""
        path = tmp_path / "app-config.json"
        path.write_text(json.dumps({
            "catalog": {"providers": {"keycloakOrg": {
                "default": {"baseUrl": "https://sso.example.com", "username": "admin", "password": "x"}
            }}}
        }))

        configs = load_provider_configs(path)

        assert len(configs) == 1
        assert configs[0].username == "admin"

    def test_load_missing_file(self, tmp_path):
        """Test a missing file is a configuration error."""
        with pytest.raises(ConfigError):
            load_provider_configs(tmp_path / "missing.json")

    def test_load_invalid_json(self, tmp_path):
        """Test unparsable JSON is a configuration error."""
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(ConfigError):
            load_provider_configs(path)


class TestSettings:
    """Test process settings."""

    def test_environment_overrides(self, monkeypatch):
        """Test settings are read from the environment."""
        monkeypatch.setenv("EVENT_TOPIC", "directory")
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example.com, https://b.example.com")

        settings = Settings(_env_file=None)

        assert settings.event_topic == "directory"
        assert settings.cors_origins == ["https://a.example.com", "https://b.example.com"]

    def test_logfire_settings(self):
        """Test logfire only sends when asked to and a token is present."""
        settings = Settings(_env_file=None, logfire_send=False)
        assert settings.get_logfire_settings()["send_to_logfire"] is False

        settings = Settings(_env_file=None, logfire_send=True, logfire_token="tok")
        logfire_settings = settings.get_logfire_settings()
        assert logfire_settings["send_to_logfire"] == "if-token-present"
        assert logfire_settings["token"] == "tok"
