"""Configuration loading: YAML file, then OPENREBALANCE_* environment overrides."""
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import ValidationError

from .schemas import Config
from ..utils.config import env_overrides, load_config
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)


class ConfigManager:
    """Validated engine configuration.

    Usage:
        manager = ConfigManager.load("configs/default.yaml")
        cfg = manager.config
        executor = SwapExecutor(venue, waiter, repo, cfg.executor)
    """

    def __init__(self, config: Optional[Config] = None, source: Optional[Path] = None):
        self._config = config or Config()
        self.source = source

    @classmethod
    def load(cls, path: Optional[str | Path] = None, use_env: bool = True) -> ConfigManager:
        """
        Build the configuration for one process.

        Args:
            path: YAML file; schema defaults are used when omitted.
            use_env: Apply OPENREBALANCE_* overrides on top of the file.

        Raises:
            FileNotFoundError: If `path` does not exist
            ValidationError: If the merged values do not match the schema
        """
        raw: Dict[str, Any] = load_config(path) if path is not None else {}
        if use_env:
            raw = _deep_merge(raw, env_overrides())
        try:
            config = Config(**raw)
        except ValidationError as e:
            LOGGER.error(f"Invalid configuration ({path or 'defaults'}): {e}")
            raise
        LOGGER.info(f"Configuration loaded from {path or 'defaults'}")
        return cls(config, Path(path) if path is not None else None)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> ConfigManager:
        return cls(Config(**values))

    def get(self, key: str, default: Any = None) -> Any:
        """Dotted lookup, e.g. get("planner.slippage_tolerance")."""
        value: Any = self._config
        for part in key.split("."):
            if not hasattr(value, part):
                return default
            value = getattr(value, part)
        return value

    def merge(self, overrides: Dict[str, Any]) -> None:
        """Apply nested overrides; the result is validated as a whole."""
        self._config = Config(**_deep_merge(self.to_dict(), overrides))

    def to_dict(self) -> Dict[str, Any]:
        return self._config.model_dump()

    @property
    def config(self) -> Config:
        return self._config


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
