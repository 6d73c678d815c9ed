"""
Unit tests for the transformer registry and bundled transformers.
"""

import pytest

from dirsync.catalog.entities import UserEntity
from dirsync.core.errors import ConfigError
from dirsync.directory.models import DirectoryUser
from dirsync.sync.transformers import (
    TransformerRegistry,
    noop_group_transformer,
    noop_user_transformer,
    sanitize_email_transformer,
)


class TestTransformerRegistry:
    """Test one-time transformer binding."""

    def test_starts_empty(self):
        """Test nothing is bound by default."""
        registry = TransformerRegistry()

        assert registry.user_transformer is None
        assert registry.group_transformer is None

    def test_user_transformer_binds_once(self):
        """Test a second user transformer is a configuration error."""
        registry = TransformerRegistry()
        registry.set_user_transformer(noop_user_transformer)

        with pytest.raises(ConfigError):
            registry.set_user_transformer(sanitize_email_transformer)

        assert registry.user_transformer is noop_user_transformer

    def test_group_transformer_binds_once(self):
        """Test a second group transformer is a configuration error."""
        registry = TransformerRegistry()
        registry.set_group_transformer(noop_group_transformer)

        with pytest.raises(ConfigError):
            registry.set_group_transformer(noop_group_transformer)


class TestSanitizeEmail:
    """Test the e-mail name sanitizer."""

    @pytest.mark.asyncio
    async def test_replaces_invalid_characters(self):
        """Test every non-alphanumeric character becomes a dash."""
        entity = UserEntity(name="jane.doe+ops@example.com")
        user = DirectoryUser(id="u-1", username="jane.doe+ops@example.com")

        result = await sanitize_email_transformer(entity, user, "acme", [])

        assert result.name == "jane-doe-ops-example-com"
