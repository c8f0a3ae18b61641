"""Shared fixtures for the agentrun test suite."""

import pytest

from agentrun.observability.logging import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config loader at an empty temp location, never ~/.agentrun."""
    config_path = tmp_path / "configuration.json"
    monkeypatch.setenv("AGENTRUN_CONFIG", str(config_path))
    return config_path


@pytest.fixture(autouse=True)
def reset_trace_context():
    yield
    clear_trace_context()
