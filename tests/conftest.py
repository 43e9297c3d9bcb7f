"""Pytest configuration and shared fixtures."""

import pytest

from fakes import FakePayments, InMemoryAccountStore, build_config
from portal.config.settings import AppConfig


@pytest.fixture
def config() -> AppConfig:
    return build_config()


@pytest.fixture
def store() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def payments() -> FakePayments:
    return FakePayments()
