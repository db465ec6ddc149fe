"""Shared flowrun configuration utilities.

Centralises reading of ~/.flowrun/configuration.json so that the engine,
the CLI and embedding applications share one implementation.

Precedence for every engine setting: explicit constructor argument, then
``FLOWRUN_*`` environment variable, then the ``engine`` section of the
configuration file, then the built-in default.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MAX_EXECUTION_SECONDS = 300.0
DEFAULT_MAX_NODES = 1000
DEFAULT_MAX_LOOP_ITERATIONS = 10000
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_SLOW_NODE_MS = 1000

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWRUN_CONFIG_FILE = Path.home() / ".flowrun" / "configuration.json"


def get_config_path() -> Path:
    """Return the configuration file path (FLOWRUN_CONFIG overrides the default)."""
    override = os.environ.get("FLOWRUN_CONFIG")
    return Path(override) if override else FLOWRUN_CONFIG_FILE


def get_flowrun_config() -> dict[str, Any]:
    """Load flowrun configuration from ~/.flowrun/configuration.json."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _engine_setting(name: str, default: Any, cast: type) -> Any:
    env_value = os.environ.get(f"FLOWRUN_{name.upper()}")
    if env_value not in (None, ""):
        try:
            return cast(env_value)
        except ValueError:
            pass
    value = get_flowrun_config().get("engine", {}).get(name)
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        return default


def get_max_execution_seconds() -> float:
    return _engine_setting("max_execution_seconds", DEFAULT_MAX_EXECUTION_SECONDS, float)


def get_max_nodes() -> int:
    return _engine_setting("max_nodes", DEFAULT_MAX_NODES, int)


def get_max_loop_iterations() -> int:
    return _engine_setting("max_loop_iterations", DEFAULT_MAX_LOOP_ITERATIONS, int)


def get_http_timeout_seconds() -> float:
    return _engine_setting("http_timeout_seconds", DEFAULT_HTTP_TIMEOUT_SECONDS, float)


def get_slow_node_ms() -> int:
    return _engine_setting("slow_node_ms", DEFAULT_SLOW_NODE_MS, int)


def get_storage_path() -> str | None:
    """Return the configured storage directory for the file store, if any."""
    return _engine_setting("storage_path", None, str)


# ---------------------------------------------------------------------------
# EngineConfig - budgets and defaults for ExecutionEngine
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Execution budgets and defaults loaded from ~/.flowrun/configuration.json."""

    max_execution_seconds: float = field(default_factory=get_max_execution_seconds)
    max_nodes: int = field(default_factory=get_max_nodes)
    max_loop_iterations: int = field(default_factory=get_max_loop_iterations)
    http_timeout_seconds: float = field(default_factory=get_http_timeout_seconds)
    slow_node_ms: int = field(default_factory=get_slow_node_ms)
    storage_path: str | None = field(default_factory=get_storage_path)
