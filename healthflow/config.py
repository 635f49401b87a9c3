"""
Configuration management for HealthFlow
Handles runtime settings stored in config.json under the data directory
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .paths import config_path

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: dict[str, Any] = {
    "log_level": "INFO",
    "log_to_file": True,
    "max_concurrent_analyses": 4,
    "request_timeout_seconds": 240,
    "status_queue_size": 256,
}


class Config:
    """Manage application configuration"""

    def __init__(self, config_file: Path | None = None):
        self.config_file = Path(config_file) if config_file is not None else config_path()
        self._config = self._load_config()

    def _load_config(self) -> dict[str, Any]:
        """Load configuration from file, merged over the defaults"""
        merged = dict(DEFAULT_CONFIG)
        if not self.config_file.exists():
            return merged
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Error loading config %s: %s", self.config_file, exc)
            return merged
        if not isinstance(loaded, dict):
            logger.warning("Ignoring config %s: expected a JSON object.", self.config_file)
            return merged
        merged.update(loaded)
        return merged

    def save(self) -> None:
        """Save configuration to file"""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self._config, f, indent=2)
        except OSError as exc:
            logger.error("Error saving config %s: %s", self.config_file, exc)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value"""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value and save"""
        self._config[key] = value
        self.save()

    @property
    def log_level(self) -> str:
        return str(self.get("log_level", "INFO")).upper()

    @property
    def log_to_file(self) -> bool:
        return bool(self.get("log_to_file", True))

    @property
    def max_concurrent_analyses(self) -> int:
        return _positive_int(self.get("max_concurrent_analyses"), DEFAULT_CONFIG["max_concurrent_analyses"])

    @property
    def request_timeout_seconds(self) -> int:
        return _positive_int(self.get("request_timeout_seconds"), DEFAULT_CONFIG["request_timeout_seconds"])

    @property
    def status_queue_size(self) -> int:
        return _positive_int(self.get("status_queue_size"), DEFAULT_CONFIG["status_queue_size"])


def _positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    if parsed <= 0:
        return default
    return parsed
