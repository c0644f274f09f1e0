"""
Configuration Manager for SolarView

Loads the engine configuration from a YAML file. A missing file means
built-in defaults; a file that cannot be parsed or fails validation is a
ConfigurationError.
"""

import os
import yaml
import logging
from typing import Any, Dict, Optional
from pathlib import Path

import pydantic

from solarview.config import EngineConfig
from solarview.errors import ConfigurationError
from solarview.timezone_utils import initialize_timezones

log = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SOLARVIEW_CONFIG"


def resolve_config_path(cli_path: Optional[str] = None, project_root: Optional[Path] = None) -> Path:
    """
    Pick the configuration file path.

    Precedence: CLI argument, then the SOLARVIEW_CONFIG environment
    variable, then config.yaml in the project root.
    """
    if cli_path:
        return Path(cli_path).expanduser().resolve()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser().resolve()
    root = project_root or Path(__file__).resolve().parents[1]
    return root / "config.yaml"


class ConfigurationManager:
    """Loads and caches the engine configuration."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config_cache: Optional[EngineConfig] = None

    @property
    def config(self) -> EngineConfig:
        if self._config_cache is None:
            return self.load_config()
        return self._config_cache

    def load_config(self) -> EngineConfig:
        """Load config.yaml (or defaults) and initialize timezone utilities."""
        if self.config_path.exists():
            log.info(f"Loading configuration from {self.config_path}")
            config = self._from_dict(self._read_file())
        else:
            log.info(f"No configuration file at {self.config_path}, using defaults")
            config = EngineConfig()

        self._config_cache = config
        initialize_timezones(config.timezone)
        return config

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r') as f:
                config_dict = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {self.config_path}: {e}")
        if config_dict is None:
            return {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"{self.config_path} must contain a mapping at the top level")
        return config_dict

    def _from_dict(self, config_dict: Dict[str, Any]) -> EngineConfig:
        try:
            return EngineConfig(**config_dict)
        except pydantic.ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"Invalid configuration in {self.config_path}: {problems}")

    def save_config(self, config: EngineConfig) -> None:
        """Write the configuration back to the YAML file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            yaml.safe_dump(config.model_dump(), f, sort_keys=False)
        self._config_cache = config
        log.info(f"Configuration saved to {self.config_path}")
