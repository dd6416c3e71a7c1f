"""
tests/conftest.py

Pytest configuration and shared fixtures for the logpipe test suite.

Integration tests (marked `integration`) need a Postgres with the pgmq
extension and run only when LOGPIPE_TEST_DSN is set.
"""

from __future__ import annotations

import os

import pytest

from logpipe.broker import QueueHandle
from logpipe.config import Settings, reset_settings
from logpipe.core.errors import BrokerUnavailable
from tests.helpers import TEST_BROKER_URL, TEST_SINK_URL, FakeQueue, FakeSink


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "integration: requires a Postgres with the pgmq extension (LOGPIPE_TEST_DSN)",
    )


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        BROKER_URL=TEST_BROKER_URL,
        SINK_URL=TEST_SINK_URL,
        QUEUE_NAME="logs_test",
        HEALTH_CACHE_TTL_SECONDS=5.0,
        _env_file=None,
    )


@pytest.fixture
def handle() -> QueueHandle:
    return QueueHandle("logs_test")


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def fake_sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def broker_down() -> BrokerUnavailable:
    return BrokerUnavailable("connection refused")


@pytest.fixture
def integration_dsn() -> str:
    dsn = os.environ.get("LOGPIPE_TEST_DSN")
    if not dsn:
        pytest.skip("LOGPIPE_TEST_DSN not set")
    return dsn
