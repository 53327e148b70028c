"""
Configuration management for device-lens.

Loads the YAML configuration into an AppConfig and writes it back.
"""

from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from .models import AppConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DEVICE_LENS_CONFIG"
DATA_DIR_ENV_VAR = "DEVICE_LENS_DATA_DIR"
CONFIG_FILENAME = "config.yaml"


def default_data_dir() -> Path:
    """$DEVICE_LENS_DATA_DIR, else the XDG data directory."""
    override = os.environ.get(DATA_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_data / "device-lens"


def resolve_config_path(config_path: Optional[Path] = None) -> Path:
    """Explicit path, then $DEVICE_LENS_CONFIG, then config.yaml in the data directory."""
    if config_path is not None:
        return config_path
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return default_data_dir() / CONFIG_FILENAME


class ConfigManager:
    """Manages application configuration."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = resolve_config_path(config_path)
        self._config: Optional[AppConfig] = None

    @property
    def config(self) -> AppConfig:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            self.load()
        return self._config  # type: ignore

    def load(self) -> AppConfig:
        """Load configuration from file; a missing or invalid file yields defaults."""
        if self.config_path.exists():
            try:
                with open(self.config_path) as f:
                    data = yaml.safe_load(f) or {}
                self._config = AppConfig.model_validate(data)
                logger.info(f"Loaded configuration from {self.config_path}")
            except (OSError, yaml.YAMLError, ValidationError) as e:
                logger.exception(f"Error loading config from {self.config_path}: {e}")
                self._config = AppConfig()
        else:
            logger.info(f"No config file found at {self.config_path}, using defaults")
            self._config = AppConfig()

        return self._config

    def save(self) -> None:
        """Save current configuration to file."""
        if self._config is None:
            return

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        data = self._config.model_dump(mode="json", exclude_none=True)

        try:
            with open(self.config_path, "w") as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False)
            logger.info(f"Saved configuration to {self.config_path}")
        except OSError as e:
            logger.exception(f"Error saving config to {self.config_path}: {e}")

    def update(self, config: AppConfig) -> None:
        """Replace the configuration and persist it."""
        self._config = config
        self.save()
