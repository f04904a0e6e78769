"""Pytest configuration and fixtures."""

from collections.abc import Iterator

import pytest

from etherfi_monitor.config import clear_settings_cache


@pytest.fixture
def sample_address() -> str:
    """Sample mixed-case wallet address for testing."""
    return "0x1234567890AbCdEf1234567890aBcDeF12345678"


@pytest.fixture(autouse=True)
def fresh_settings() -> Iterator[None]:
    """Reload settings from the (monkeypatched) environment in every test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
