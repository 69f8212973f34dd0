"""
Pytest configuration and fixtures for neodeck tests.
"""

import os
import time

import pytest
from hypothesis import Verbosity, settings

from neodeck.core.config import NeodeckConfig
from neodeck.service.types import Message, MessageType, Task

# Configure hypothesis settings for property-based testing
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # Disable deadline for slow operations
)

settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "dev",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)

# Load profile from environment or use default
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


def _wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    """Helper that polls a predicate until true or timeout."""
    return _wait_for


@pytest.fixture
def config():
    """Default configuration with a token and organization set."""
    cfg = NeodeckConfig()
    cfg.service.access_token = "test-token"
    cfg.service.organization = "acme"
    cfg.retry.base_delay = 0.0
    return cfg


@pytest.fixture
def sample_task():
    return Task(id="task-1", name="Deploy stack", status="idle")


@pytest.fixture
def user_message():
    return Message(MessageType.USER, "hello")


@pytest.fixture
def assistant_message():
    return Message(MessageType.ASSISTANT, "Hi! How can I help?")
