"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
Environment defaults are set before any import of the settings module so
tests never need a live Redis server or a local .env file.
"""

import os

# CRITICAL: Set these before any imports that might load settings
os.environ["TESTING"] = "true"
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from unittest.mock import Mock

import pytest

from rethrottle.adapters.counter_store.in_memory import InMemoryCounterStore


@pytest.fixture
def clock() -> Mock:
    """Controllable time source; advance with clock.return_value += seconds."""
    return Mock(return_value=1000.0)


@pytest.fixture
def memory_store(clock: Mock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)
