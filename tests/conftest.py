"""Pytest configuration."""

import os

# Ensure test environment
os.environ.setdefault("CM_DATABASE_URL", "sqlite+aiosqlite:///./clickmatch_test.db")
os.environ.setdefault("CM_DEBUG", "true")
os.environ.setdefault("CM_ADMIN_SETUP_KEY", "test-setup-key")
os.environ.setdefault("CM_GOOGLE_ADS_CUSTOMER_ID", "123-456-7890")
os.environ.setdefault("CM_GOOGLE_ADS_CONVERSION_ACTION_ID", "555")
os.environ.setdefault("CM_GOOGLE_ADS_DEVELOPER_TOKEN", "dev-token")
os.environ.setdefault("CM_GOOGLE_ADS_ACCESS_TOKEN", "access-token")

import pytest

from clickmatch.config import Settings
from fakes import FakeClock, InMemoryStore


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()
