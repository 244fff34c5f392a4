"""
Pytest configuration for drive_connect. In-memory SQLite so tests don't touch the filesystem.
"""
import os

# Must be set before drive_connect.database is imported
os.environ["DRIVE_DATABASE_URL"] = "sqlite:///:memory:"
os.environ.pop("DRIVE_TOKEN_ENCRYPTION_KEYS", None)
os.environ.pop("APP_ENV", None)

import pytest

from drive_connect.database import engine, init_db
from drive_connect.models import Base


@pytest.fixture(autouse=True)
def fresh_db():
    """Empty tables for every test."""
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture
def oauth_env(monkeypatch):
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", "client-123.apps.googleusercontent.com")
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_SECRET", "shh-secret")


@pytest.fixture
def no_oauth_env(monkeypatch):
    monkeypatch.delenv("GOOGLE_OAUTH_CLIENT_ID", raising=False)
    monkeypatch.delenv("GOOGLE_OAUTH_CLIENT_SECRET", raising=False)
