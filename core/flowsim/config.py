"""Shared flowsim configuration utilities.

Centralises reading of ~/.flowsim/configuration.json so that the CLI, the
runner and embedding hosts share one implementation.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_TRANSIT_RATE = 0.01  # ~100 steps to traverse an edge
DEFAULT_SCRIPT_MAX_INSTRUCTIONS = 100_000
PRODUCER_MODES = ("repeat", "total")

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWSIM_CONFIG_FILE = Path.home() / ".flowsim" / "configuration.json"


def get_config_path() -> Path:
    """Return the configuration file path, honouring FLOWSIM_CONFIG."""
    override = os.environ.get("FLOWSIM_CONFIG")
    if override:
        return Path(override)
    return FLOWSIM_CONFIG_FILE


def get_flowsim_config(path: Path | None = None) -> dict[str, Any]:
    """Load flowsim configuration; a missing or unreadable file yields {}."""
    config_path = Path(path) if path is not None else get_config_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_log_level() -> str:
    """Return the configured log level (default INFO)."""
    return str(get_flowsim_config().get("logging", {}).get("level", "INFO"))


def get_log_format() -> str:
    """Return the configured log format: json, human or auto."""
    return str(get_flowsim_config().get("logging", {}).get("format", "auto"))


# ---------------------------------------------------------------------------
# EngineConfig – shared by the scheduler, script host and runner
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Simulation engine configuration.

    ``producer_mode`` selects how ``messages_per_cycle`` is read:
    "repeat" emits that many messages on every activation forever, "total"
    treats it as a lifetime cap and emits one message per activation.
    """

    transit_rate: float = DEFAULT_TRANSIT_RATE
    script_max_instructions: int = DEFAULT_SCRIPT_MAX_INSTRUCTIONS
    script_timeout_seconds: float | None = None
    producer_mode: str = "repeat"
    halt_on_failure: bool = True
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if not 0.0 < self.transit_rate <= 1.0:
            raise ValueError(f"transit_rate must be in (0, 1], got {self.transit_rate}")
        if self.script_max_instructions < 1:
            raise ValueError("script_max_instructions must be positive")
        if self.script_timeout_seconds is not None and self.script_timeout_seconds <= 0:
            raise ValueError("script_timeout_seconds must be positive when set")
        if self.producer_mode not in PRODUCER_MODES:
            raise ValueError(
                f"producer_mode must be one of {PRODUCER_MODES}, got {self.producer_mode!r}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        """Build from a mapping; unknown keys are kept in ``extra``."""
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        return cls(**kwargs, extra=extra)

    @classmethod
    def from_file(cls, path: Path | None = None) -> "EngineConfig":
        """Build from the ``engine`` section of the configuration file."""
        section = get_flowsim_config(path).get("engine", {})
        if not isinstance(section, dict):
            raise ValueError("'engine' section of the configuration must be an object")
        return cls.from_dict(section)
