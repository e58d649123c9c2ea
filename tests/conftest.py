"""Shared fixtures for the RD Station sync tests.

Provides:
- store: Fresh InMemoryCRMStore per test
- registry: FakeRegistry with no known companies
- settings: Settings built from defaults only (no .env)
"""

from __future__ import annotations

import pytest

from src.crm_sync.config import Settings
from tests.fakes import FakeRegistry, InMemoryCRMStore


@pytest.fixture
def store() -> InMemoryCRMStore:
    return InMemoryCRMStore()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)
