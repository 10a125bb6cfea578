from unittest.mock import Mock

import pytest


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("BOT_ORDER_LOOKUP_HMAC_SECRET", "test-secret")
    monkeypatch.setenv("ORDER_LOOKUP_BASE_URL", "https://shop.example/api/v1")
    monkeypatch.setenv("OPENAI_API_KEY", "")
