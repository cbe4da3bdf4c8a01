import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from prrally_core.errors import ConfigError

SUPPORTED_AGENTS = ("claude", "codex")

DEFAULT_CONFIG: dict = {
    "reviewer": "claude",
    "reviewee": "claude",
    "max_iterations": 10,
    "timeout_secs": 600,
    "prompt_dir": None,  # None = project-local / global / built-in templates only
    "reviewer_additional_tools": [],  # extra tool patterns passed to the reviewer backend
    "reviewee_additional_tools": [],  # e.g. "Bash(cargo test:*)" for the reviewee backend
    "auto_post": False,  # post reviewer / reviewee summaries to the PR
    "store": "noop",
    "store_path": ".prrally.db",
}


@dataclass
class RallyConfig:
    """The validated subset of the configuration the engine runs on.

    The engine never reads the raw config dict: the CLI loads it, and this
    struct is what gets passed to a session at creation.
    """

    reviewer: str = "claude"
    reviewee: str = "claude"
    max_iterations: int = 10
    timeout_secs: int = 600
    prompt_dir: Optional[str] = None
    reviewer_additional_tools: list[str] = field(default_factory=list)
    reviewee_additional_tools: list[str] = field(default_factory=list)
    auto_post: bool = False

    def __post_init__(self):
        for role in ("reviewer", "reviewee"):
            name = getattr(self, role)
            if name not in SUPPORTED_AGENTS:
                raise ConfigError(f"Unknown {role} backend: {name!r}. Supported: {', '.join(SUPPORTED_AGENTS)}")
        for key in ("max_iterations", "timeout_secs"):
            value = getattr(self, key)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"{key} must be a positive integer, got {value!r}")

    @classmethod
    def from_dict(cls, config: dict) -> "RallyConfig":
        return cls(
            reviewer=config.get("reviewer", DEFAULT_CONFIG["reviewer"]),
            reviewee=config.get("reviewee", DEFAULT_CONFIG["reviewee"]),
            max_iterations=config.get("max_iterations", DEFAULT_CONFIG["max_iterations"]),
            timeout_secs=config.get("timeout_secs", DEFAULT_CONFIG["timeout_secs"]),
            prompt_dir=config.get("prompt_dir"),
            reviewer_additional_tools=list(config.get("reviewer_additional_tools") or []),
            reviewee_additional_tools=list(config.get("reviewee_additional_tools") or []),
            auto_post=bool(config.get("auto_post", False)),
        )


def load_config(config_path: str = ".prrally.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prrally.yml in the current directory
      3. CLI argument overrides
    """
    config = {
        **DEFAULT_CONFIG,
        "reviewer_additional_tools": list(DEFAULT_CONFIG["reviewer_additional_tools"]),
        "reviewee_additional_tools": list(DEFAULT_CONFIG["reviewee_additional_tools"]),
    }

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            try:
                file_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Could not parse {config_path}: {e}")
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    config["github_token"] = os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN")

    return config
