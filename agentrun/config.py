"""Shared agentrun configuration utilities.

Centralises reading of ~/.agentrun/configuration.json so that the server,
the CLI and every lane share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentrun.schemas.run import Lane

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_FILE = Path.home() / ".agentrun" / "configuration.json"

DEFAULT_MODEL = "gemini/gemini-2.5-flash"
DEFAULT_MAX_TOKENS = 8192
DEFAULT_TOOL_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_TOOL_RESULT_CHARS = 3_000

# Tool-call budget per lane
DEFAULT_LANE_MAX_STEPS: dict[Lane, int] = {
    Lane.BUILDER: 10,
    Lane.ASSISTANT: 50,
    Lane.PUBLIC_EXECUTE: 25,
    Lane.WORKFLOW: 50,
}


def get_config_path() -> Path:
    """Config file location; AGENTRUN_CONFIG overrides the default."""
    override = os.environ.get("AGENTRUN_CONFIG")
    return Path(override) if override else DEFAULT_CONFIG_FILE


def get_agentrun_config() -> dict[str, Any]:
    """Load configuration from disk. Missing or unreadable files yield {}."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the configured model string (e.g. 'gemini/gemini-2.5-flash')."""
    llm = get_agentrun_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    return get_agentrun_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_agentrun_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_api_base() -> str | None:
    return get_agentrun_config().get("llm", {}).get("api_base")


def get_lane_max_steps() -> dict[Lane, int]:
    """Per-lane budgets, with any overrides from the ``budgets`` section."""
    budgets = dict(DEFAULT_LANE_MAX_STEPS)
    overrides = get_agentrun_config().get("budgets", {})
    for lane in Lane:
        value = overrides.get(lane.value)
        if isinstance(value, int) and value > 0:
            budgets[lane] = value
    return budgets


def get_storage_path() -> Path:
    configured = get_agentrun_config().get("storage_path")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".agentrun" / "runs"


# ---------------------------------------------------------------------------
# RuntimeConfig / ServerConfig
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Runtime configuration loaded from ~/.agentrun/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.7
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = field(default_factory=get_api_base)
    tool_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS
    max_tool_result_chars: int = DEFAULT_MAX_TOOL_RESULT_CHARS
    lane_max_steps: dict[Lane, int] = field(default_factory=get_lane_max_steps)
    storage_path: Path = field(default_factory=get_storage_path)

    def max_steps_for(self, lane: Lane) -> int:
        return self.lane_max_steps.get(lane, DEFAULT_LANE_MAX_STEPS[lane])


@dataclass
class ServerConfig:
    """Configuration for the HTTP transport."""

    host: str = "127.0.0.1"
    port: int = 8080
