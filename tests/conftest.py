"""Pytest configuration and shared fixtures for the artifact cleanup tool."""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep CI environment variables from leaking into argument defaults."""
    for name in (
        "GH_TOKEN",
        "GITHUB_TOKEN",
        "GITHUB_REPOSITORY",
        "GH_USERNAME",
        "CLEANUP_LIMIT",
        "CLEANUP_REMOVE_DIRECTION",
        "CLEANUP_FIXED_RESERVED_SIZE",
        "CLEANUP_ARTIFACT_PATHS",
        "CLEANUP_SIMULATE_COMPRESSION_LEVEL",
        "CLEANUP_FAIL_ON_ERROR",
        "CLEANUP_OPTION_ENABLE_RETRIES",
        "CLEANUP_OPTION_MAX_ALLOWED_RETRIES",
        "CLEANUP_OPTION_PAGINATE_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)
