"""
Pytest Configuration

Shared fixtures for the ReqFlow suite: environment isolation for
``REQFLOW_*`` settings, scripted mock responses, and a coroutine runner.
"""

from __future__ import annotations

import asyncio
import os

import pytest

from ReqFlow.testing import MockResponses


@pytest.fixture(autouse=True, scope="session")
def _isolate_settings_env():
    """Keep developer ``REQFLOW_*`` variables out of ClientSettings defaults."""
    saved = {key: os.environ.pop(key) for key in list(os.environ) if key.startswith("REQFLOW_")}
    yield
    os.environ.update(saved)


@pytest.fixture
def responses() -> MockResponses:
    return MockResponses()


@pytest.fixture
def run():
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run
