"""Config utilities: load YAML configs and environment variables safely."""
from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict
import yaml
from dotenv import load_dotenv

# Load .env once at import time
load_dotenv()

ENV_PREFIX = "OPENREBALANCE_"


def load_config(path: str | Path) -> Dict[str, Any]:
    """Load a YAML config file into a dictionary.
    Args:
        path: Path to a YAML file.
    Returns:
        Parsed configuration dictionary.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def env(key: str, default: Any | None = None) -> Any:
    """Fetch environment variable with a default.
    Args:
        key: Environment variable name.
        default: Fallback value if not set.
    """
    return os.getenv(key, default)


def env_overrides() -> Dict[str, Any]:
    """Collect configuration overrides from OPENREBALANCE_* environment variables.

    Returns a nested dict suitable for ConfigManager.merge().
    """
    mapping = {
        "RPC_URL": ("chain", "rpc_url"),
        "CHAIN_ID": ("chain", "chain_id"),
        "HERMES_URL": ("oracle", "hermes_url"),
        "DB_PATH": ("storage", "db_path"),
        "LOG_DIR": ("logging", "log_dir"),
    }
    overrides: Dict[str, Any] = {}
    for suffix, (section, key) in mapping.items():
        value = env(ENV_PREFIX + suffix)
        if value is None or value == "":
            continue
        overrides.setdefault(section, {})[key] = value
    return overrides
