"""Pytest configuration and fixtures for pulsewatch tests."""

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from pulsewatch.client import Monitor
from pulsewatch.config import TrackerConfig
from pulsewatch.reporter import Reporter
from pulsewatch.tracker import Tracker

REPORT_URL = "https://collect.example.com/report"


@pytest.fixture(autouse=True)
def reset_monitor():
    """Reset the monitor singleton before and after each test."""
    Monitor.reset_instance()
    yield
    Monitor.reset_instance()


@pytest.fixture
def clean_env():
    """Provide a clean environment without pulsewatch-related variables."""
    env_vars_to_clear = [
        "DO_NOT_TRACK",
        "PULSEWATCH_ENABLED",
        "PULSEWATCH_PROJECT",
        "PULSEWATCH_APP_VERSION",
        "PULSEWATCH_REPORT_URL",
        "PULSEWATCH_PAGE_URL",
        "PULSEWATCH_DEBUG",
        "PULSEWATCH_REPORT_IMMEDIATELY",
        "PULSEWATCH_SAMPLE_RATE",
        "PULSEWATCH_MAX_CACHE",
    ]

    # Store original values
    original = {var: os.environ.get(var) for var in env_vars_to_clear}

    # Clear the variables
    for var in env_vars_to_clear:
        if var in os.environ:
            del os.environ[var]

    # Never read a developer's real config file
    with patch("pulsewatch.config.CONFIG_FILE", Path("/nonexistent/pulsewatch/config.json")):
        yield

    # Restore original values
    for var, value in original.items():
        if value is not None:
            os.environ[var] = value
        elif var in os.environ:
            del os.environ[var]


@pytest.fixture
def config():
    """A minimal valid tracker configuration."""
    return TrackerConfig(project="test-project", report_url=REPORT_URL, app_version="1.0.0")


@pytest.fixture
def mock_reporter():
    """A reporter double that records batches."""
    reporter = MagicMock(spec=Reporter)
    reporter.sent = []
    reporter.send.side_effect = lambda batch, immediate=False: reporter.sent.append(
        (list(batch), immediate)
    )
    return reporter


@pytest.fixture
def tracker(config, mock_reporter):
    """A tracker that always samples, wired to the recording reporter."""
    tracker = Tracker(config, rng=lambda: 0.0)
    tracker.set_reporter(mock_reporter)
    yield tracker
    if not tracker.destroyed:
        tracker.destroy()


@pytest.fixture
def http_client():
    """An httpx client for reporters under test, closed afterwards."""
    client = httpx.Client(timeout=5.0)
    yield client
    client.close()
