"""
Pytest fixtures for parley tests.
"""

import os
import tempfile
from pathlib import Path

import pytest

from parley.core.ledger import UsageLedger
from parley.core.model_registry import ModelCatalog
from parley.core.telemetry import TelemetryCollector

_KEY_VARS = ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_API_KEY", "PARLEY_RELAY_TOKEN")


@pytest.fixture(autouse=True)
def _clean_env():
    """Prevent environment variable pollution between tests.

    Vendor keys from the developer's shell would otherwise change which
    access path the resolver picks.
    """
    original_env = os.environ.copy()
    for name in _KEY_VARS:
        os.environ.pop(name, None)
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def catalog(temp_dir):
    """A model catalog with built-in defaults and no user overrides."""
    return ModelCatalog(base_dir=temp_dir / "catalog")


@pytest.fixture
def ledger(temp_dir):
    return UsageLedger(base_dir=temp_dir / "usage")


@pytest.fixture
def telemetry(temp_dir):
    return TelemetryCollector(base_dir=temp_dir / "telemetry")
