"""
PyTest configuration and fixtures for the directory synchronization engine.

This module provides shared test fixtures: provider configuration, the
call-tracking fake directory, authenticated directory sessions, reference
catalogs and the API test client.
"""

import os
import sys
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
import logfire

# Add project root to Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dirsync.catalog.connection import InMemoryCatalog
from dirsync.catalog.store import DatabaseCatalog
from dirsync.core.config import ProviderConfig, settings
from dirsync.db.database import DatabaseManager
from dirsync.directory.auth import TokenGuard
from dirsync.directory.limiter import BoundedFetchScheduler
from dirsync.sync.reader import DirectorySession
from tests.fakes import FakeDirectoryClient, RecordingCounter, build_sample_directory


# Keep telemetry local while testing
logfire.configure(send_to_logfire=False, console=False)

# Override settings for testing
settings.environment = "testing"
settings.database_url = "sqlite+aiosqlite:///:memory:"
settings.logfire_environment = "testing"
settings.providers_config_file = None


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def provider_config() -> ProviderConfig:
    """Password-grant provider with small page sizes."""
    return ProviderConfig(
        id="acme",
        base_url="https://sso.example.com",
        realm="acme",
        username="admin",
        password="secret",
        user_query_size=2,
        group_query_size=2,
        max_concurrency=3,
    )


@pytest.fixture
def directory() -> FakeDirectoryClient:
    """Sample directory served by a version 23 server."""
    return build_sample_directory()


@pytest.fixture
def legacy_directory() -> FakeDirectoryClient:
    """Same sample directory served by a version 22 server."""
    return build_sample_directory(version=22)


@pytest.fixture
def make_session(provider_config):
    """Build an authenticated-on-demand session around a fake client."""

    def factory(client: FakeDirectoryClient, config: ProviderConfig = None) -> DirectorySession:
        config = config or provider_config
        return DirectorySession(
            client=client,
            token_guard=TokenGuard(client, config),
            limiter=BoundedFetchScheduler(config.max_concurrency),
            config=config,
        )

    return factory


@pytest.fixture
def catalog() -> InMemoryCatalog:
    """Empty in-memory catalog."""
    return InMemoryCatalog()


@pytest.fixture
def counter() -> RecordingCounter:
    return RecordingCounter()


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[DatabaseManager, None]:
    """In-memory SQLite database with all tables created."""
    manager = DatabaseManager(TEST_DATABASE_URL, echo=False)
    await manager.create_tables()

    yield manager

    await manager.drop_tables()
    await manager.dispose()


@pytest_asyncio.fixture
async def database_catalog(database) -> DatabaseCatalog:
    """Catalog stored in the test database."""
    return DatabaseCatalog(database)


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """API test client with the application lifespan running."""
    from main import app

    with TestClient(app) as test_client:
        yield test_client
