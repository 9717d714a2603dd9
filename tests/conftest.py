"""Pytest configuration and fixtures.

This module puts the repository root on the Python path so the
``infrastructure`` package imports without an install, and provides
settings/profile factories shared by the stack tests.
"""

import sys
from pathlib import Path

import pytest

# Add the repository root to Python path so infrastructure imports work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from infrastructure.config import DEFAULT_PROFILE_PATH, Settings  # noqa: E402
from infrastructure.scaling import ScalingProfile, load_scaling_profile  # noqa: E402


def _make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


@pytest.fixture(scope="session")
def make_settings():
    """Factory for Settings that skips the .env file; keyword overrides win over env vars."""
    return _make_settings


@pytest.fixture(scope="session")
def default_profile() -> ScalingProfile:
    """The scaling profile shipped with the repository."""
    return load_scaling_profile(DEFAULT_PROFILE_PATH)


@pytest.fixture
def profile_data(default_profile) -> dict:
    """A mutable copy of the default profile as plain data."""
    return default_profile.model_dump()
