"""Configuration management for recipesync.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument.
Missing keys fall back to defaults; setters validate and save immediately.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .validation import ValidationError, validate_url, validate_user_id

logger = logging.getLogger(__name__)

__all__ = ["Config", "DEFAULT_CONFIG_DIR"]

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "recipesync"

DEFAULT_SYNC_CONFIG: Dict[str, Any] = {
    "server_url": "http://127.0.0.1:8385",
    "interval_seconds": 30,
    "batch_size": 20,
    "timeout_seconds": 30,
    "tombstone_retention_days": 30,
}


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_data: The loaded configuration
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/recipesync/
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_data = self.load_config()

    @property
    def config_file(self) -> Path:
        """Get the config file path."""
        return self.config_dir / "config.json"

    def _defaults(self) -> Dict[str, Any]:
        return {
            "database_file": str(self.config_dir / "recipesync.sqlite"),
            "images_directory": str(self.config_dir / "images"),
            "active_user": None,
            "auth_token": None,
            "sync": copy.deepcopy(DEFAULT_SYNC_CONFIG),
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration, creating the file with defaults on first use."""
        config = self._defaults()
        if not self.config_file.exists():
            self.save_config(config)
            return config

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                stored = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Cannot read {self.config_file}, using defaults: {e}")
            return config

        if isinstance(stored, dict):
            sync = stored.pop("sync", None)
            config.update(stored)
            if isinstance(sync, dict):
                config["sync"].update(sync)
        return config

    def save_config(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Save configuration to the JSON file."""
        if config is not None:
            self.config_data = config
        temp_file = self.config_file.with_suffix(".json.tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(self.config_data, f, indent=2)
        temp_file.replace(self.config_file)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        value = self.config_data.get(key)
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        self.config_data[key] = value
        self.save_config()

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    def get_database_file(self) -> Path:
        return Path(self.config_data["database_file"]).expanduser()

    def get_images_directory(self) -> Path:
        return Path(self.config_data["images_directory"]).expanduser()

    # ===== Session =====

    def get_active_user(self) -> Optional[str]:
        """Get the logged-in user, or None. Used as the active-user provider."""
        return self.config_data.get("active_user") or None

    def set_active_user(self, user: str) -> None:
        self.set("active_user", validate_user_id(user))

    def clear_active_user(self) -> None:
        self.config_data["auth_token"] = None
        self.set("active_user", None)

    def get_auth_token(self) -> Optional[str]:
        return self.config_data.get("auth_token") or None

    def set_auth_token(self, token: Optional[str]) -> None:
        self.set("auth_token", token or None)

    # ===== Sync Configuration Methods =====

    def get_sync_config(self) -> Dict[str, Any]:
        """Get sync configuration."""
        return dict(self.config_data["sync"])

    def _set_sync(self, key: str, value: Any) -> None:
        self.config_data["sync"][key] = value
        self.save_config()

    def _positive_int(self, key: str, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(key, "must be a positive integer")
        return value

    def get_server_url(self) -> str:
        return self.config_data["sync"]["server_url"]

    def set_server_url(self, url: str) -> None:
        self._set_sync("server_url", validate_url(url))

    def get_sync_interval(self) -> int:
        return self.config_data["sync"]["interval_seconds"]

    def set_sync_interval(self, seconds: int) -> None:
        self._set_sync("interval_seconds", self._positive_int("interval_seconds", seconds))

    def get_batch_size(self) -> int:
        return self.config_data["sync"]["batch_size"]

    def set_batch_size(self, size: int) -> None:
        self._set_sync("batch_size", self._positive_int("batch_size", size))

    def get_timeout(self) -> int:
        return self.config_data["sync"]["timeout_seconds"]

    def set_timeout(self, seconds: int) -> None:
        self._set_sync("timeout_seconds", self._positive_int("timeout_seconds", seconds))

    def get_tombstone_retention_days(self) -> int:
        return self.config_data["sync"]["tombstone_retention_days"]

    def set_tombstone_retention_days(self, days: int) -> None:
        self._set_sync(
            "tombstone_retention_days", self._positive_int("tombstone_retention_days", days)
        )
