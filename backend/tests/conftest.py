"""
Pytest configuration and fixtures for the constellations backend.

This module provides:
- Environment overrides so no test reaches a real database or provider
- A temporary SQLite cache store wired into the FastAPI app
- Test client fixture for the cache store HTTP surface
- An async cache store client talking to the app in-process (httpx ASGITransport)
- A scripted fake provider for orchestrator/explorer tests
"""
import os

# Override environment variables before any backend module reads config
os.environ["CACHE_DB_BACKEND"] = "sqlite"
os.environ["OPENAI_API_KEY"] = ""
os.environ["EXPANSION_EVENT_LOG"] = "false"
os.environ["RATE_LIMIT_PER_IP_PER_MIN"] = "0"

import httpx
import pytest
from fastapi.testclient import TestClient

from db_sqlite import SqliteDatabase
from main import app
from services_cache_client import CacheStoreClient
from services_cache_store import CacheStore, get_cache_store
from tests.fakes import FakeProvider


@pytest.fixture
def cache_store(tmp_path):
    """A fresh cache store backed by a SQLite file in the test's temp dir."""
    store = CacheStore(SqliteDatabase(str(tmp_path / "cache.db")))
    store.init_schema()
    return store


@pytest.fixture
def test_app(cache_store):
    """
    The app from main.py with the cache store dependency pointed at the temp store.
    """
    app.dependency_overrides[get_cache_store] = lambda: cache_store
    yield app
    app.dependency_overrides.pop(get_cache_store, None)


@pytest.fixture
def client(test_app):
    """
    Test client for the FastAPI app.

    raise_server_exceptions=False so exceptions go through the app's handlers
    and come back as responses, as they would in production.
    """
    return TestClient(test_app, raise_server_exceptions=False)


@pytest.fixture
def cache_client(test_app):
    """Async cache store client whose requests are served by the app in-process."""
    transport = httpx.ASGITransport(app=test_app)
    http = httpx.AsyncClient(transport=transport, base_url="http://testserver")
    return CacheStoreClient(base_url="http://testserver", client=http, max_attempts=1)


@pytest.fixture
def provider():
    return FakeProvider()
